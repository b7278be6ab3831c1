"""
Signaling Message Buses

Design Decision: Bus Scope
==========================

Options Considered:
1. Process-wide singleton keyed by room id
   - Convenient, but hidden shared state
   - Hard to test two endpoints in one process

2. Explicit bus object injected per room
   - Each broker owns a subscription with a clear lifecycle
   - Tests wire two endpoints to one in-memory bus

Decision: Explicit MessageBus abstraction
- MemoryBus: in-process hub (tests, two endpoints in one process)
- BroadcastBus: UDP broadcast on the LAN (two machines, no server)

Topics are plain strings; messages are JSON-compatible dicts.
"""

import asyncio
import json
import socket
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from ..config import BROADCAST_PORT
from ..errors import SignalingError
from ..interfaces import get_broadcast_addresses

logger = logging.getLogger(__name__)

MessageCallback = Callable[[dict], None]

# Largest payload a single UDP datagram can carry
MAX_DATAGRAM_SIZE = 65507


class Subscription:
    """Handle returned by MessageBus.subscribe()."""

    def __init__(self, bus: 'MessageBus', topic: str, callback: MessageCallback):
        self.bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def cancel(self):
        """Stop receiving messages."""
        if self.active:
            self.bus.unsubscribe(self)


class MessageBus(ABC):
    """Topic-based publish/subscribe transport for signaling envelopes."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: MessageCallback) -> Subscription:
        """Register a callback for messages published on a topic."""
        subscription = Subscription(self, topic, callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        logger.debug(f"Subscribed to {topic}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        """Remove a subscription."""
        subscription.active = False
        subs = self._subscriptions.get(subscription.topic, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscriptions.pop(subscription.topic, None)
        logger.debug(f"Unsubscribed from {subscription.topic}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    def _deliver(self, topic: str, message: dict):
        """Hand a message to every local subscriber of a topic."""
        for subscription in list(self._subscriptions.get(topic, [])):
            if not subscription.active:
                continue
            try:
                subscription.callback(message)
            except Exception as e:
                logger.error(f"Subscriber error on {topic}: {e}")

    @abstractmethod
    async def publish(self, topic: str, message: dict):
        """Publish a message to all subscribers of a topic."""

    async def close(self):
        """Release bus resources."""
        self._subscriptions.clear()


class MemoryBus(MessageBus):
    """
    In-process message bus.

    Delivery is scheduled on the event loop rather than performed inline,
    so a publisher never re-enters a subscriber. Messages are serialized
    to JSON and back so subscribers never share objects with publishers.
    """

    async def publish(self, topic: str, message: dict):
        data = json.dumps(message)
        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, topic, json.loads(data))


class BroadcastBus(MessageBus):
    """
    UDP broadcast message bus for the local network.

    Every datagram is a JSON object {"topic": ..., "message": ...}.
    Each endpoint also receives its own broadcasts; the broker filters
    those out by sender id.
    """

    def __init__(self, broadcast_port: int = BROADCAST_PORT):
        super().__init__()
        self.broadcast_port = broadcast_port
        self._socket: Optional[socket.socket] = None
        self._running = False
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Bind the broadcast socket and start receiving."""
        if self._running:
            return

        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Several endpoints on one host share the port
        if hasattr(socket, 'SO_REUSEPORT'):
            self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)

        self._socket.bind(('', self.broadcast_port))
        self._socket.setblocking(False)

        self._running = True
        self._receive_task = asyncio.create_task(self._receive_loop())

        logger.info(f"Broadcast bus started on port {self.broadcast_port}")

    async def close(self):
        """Stop the bus."""
        self._running = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._socket:
            self._socket.close()
            self._socket = None

        await super().close()
        logger.info("Broadcast bus stopped")

    async def publish(self, topic: str, message: dict):
        if not self._socket:
            raise SignalingError("Broadcast bus is not started")

        data = json.dumps({'topic': topic, 'message': message}).encode('utf-8')
        if len(data) > MAX_DATAGRAM_SIZE:
            raise SignalingError(f"Envelope too large for a datagram: {len(data)} bytes")

        loop = asyncio.get_running_loop()
        sent = 0
        for addr in self._get_broadcast_addresses():
            try:
                await loop.sock_sendto(self._socket, data, (addr, self.broadcast_port))
                sent += 1
            except OSError as e:
                logger.debug(f"Broadcast to {addr} failed: {e}")

        if sent == 0:
            raise SignalingError(f"Could not broadcast on topic {topic}")

    async def _receive_loop(self):
        """Receive and dispatch broadcast datagrams."""
        loop = asyncio.get_running_loop()

        while self._running:
            try:
                data, addr = await loop.sock_recvfrom(self._socket, MAX_DATAGRAM_SIZE)
                self._handle_datagram(data, addr)

            except asyncio.CancelledError:
                break
            except OSError as e:
                if self._running:
                    logger.error(f"Error receiving broadcast: {e}")
                    await asyncio.sleep(1)

    def _handle_datagram(self, data: bytes, addr: Tuple[str, int]):
        try:
            datagram = json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug(f"Ignoring malformed datagram from {addr[0]}")
            return

        if not isinstance(datagram, dict):
            return

        topic = datagram.get('topic')
        message = datagram.get('message')
        if not isinstance(topic, str) or not isinstance(message, dict):
            return

        self._deliver(topic, message)

    def _get_broadcast_addresses(self) -> List[str]:
        """Get broadcast addresses for all interfaces."""
        return get_broadcast_addresses()
