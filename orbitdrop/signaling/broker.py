"""
Signaling Broker

Routes signaling envelopes between the two participants of one room over
an injected MessageBus, and offers the manual copy/paste token path as a
second way of delivering the same descriptors.

Routing rules:
- Topic is "orbit_signal_<ROOM>"
- Own envelopes (same sender id) are ignored
- The first foreign sender becomes the room's peer; envelopes from any
  other sender are dropped (rooms hold exactly two endpoints)
- Envelopes are handed to the single handler one at a time, in arrival
  order; imported tokens run under the same lock, in the importer's task
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from .bus import MessageBus, Subscription
from .envelope import EnvelopeType, SignalingEnvelope
from .room import parse_room_code
from .token import decode_token, encode_token
from ..errors import OrbitError, SignalingError

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[SignalingEnvelope], Awaitable[None]]

TOPIC_PREFIX = "orbit_signal_"


class SignalingBroker:
    """
    Per-room signaling endpoint.

    Usage:
        broker = SignalingBroker(bus, "AB12CD")
        broker.subscribe(handler)
        await broker.broadcast(SignalingEnvelope(EnvelopeType.ANNOUNCE))
    """

    def __init__(self, bus: MessageBus, room_id: str, peer_id: Optional[str] = None):
        self.bus = bus
        self.room_id = parse_room_code(room_id)
        self.peer_id = peer_id or uuid.uuid4().hex
        self.topic = f"{TOPIC_PREFIX}{self.room_id}"

        self._handler: Optional[EnvelopeHandler] = None
        self._subscription: Optional[Subscription] = None
        self._queue: Optional[asyncio.Queue] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._handler_lock = asyncio.Lock()
        self._remote_peer: Optional[str] = None

        # Statistics
        self.envelopes_sent = 0
        self.envelopes_received = 0
        self.envelopes_dropped = 0

    @property
    def remote_peer(self) -> Optional[str]:
        """Sender id of the other participant, once seen."""
        return self._remote_peer

    @property
    def is_subscribed(self) -> bool:
        return self._handler is not None

    async def broadcast(self, envelope: SignalingEnvelope):
        """
        Send an envelope to the other room participant.

        Best effort: nothing confirms delivery.
        """
        envelope.room = self.room_id
        envelope.sender = self.peer_id
        await self.bus.publish(self.topic, envelope.to_dict())
        self.envelopes_sent += 1
        logger.debug(f"Sent {envelope.type.value} to room {self.room_id}")

    def subscribe(self, handler: EnvelopeHandler):
        """
        Register the room's receive handler.

        Raises:
            SignalingError: if a handler is already registered
        """
        if self._handler is not None:
            raise SignalingError(f"Room {self.room_id} already has a subscriber")

        self._handler = handler
        self._queue = asyncio.Queue()
        self._subscription = self.bus.subscribe(self.topic, self._on_message)
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info(f"Subscribed to room {self.room_id} as {self.peer_id[:8]}")

    async def unsubscribe(self):
        """Stop receiving envelopes and release the handler."""
        if self._subscription:
            self._subscription.cancel()
            self._subscription = None

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        self._handler = None
        self._queue = None
        logger.info(f"Unsubscribed from room {self.room_id}")

    # === Manual token exchange ===

    def export_token(self, descriptor: dict) -> str:
        """Serialize a local session descriptor to an opaque token."""
        return encode_token(descriptor)

    async def import_token(self, token: str):
        """
        Feed a token to the handler as if it arrived over the bus.

        Raises:
            InvalidToken: if the token cannot be decoded
            SignalingError: if nothing is subscribed
            Whatever the handler raises for the descriptor
        """
        await self.import_descriptor(decode_token(token))

    async def import_descriptor(self, descriptor: Dict[str, Any]):
        """Hand an already decoded descriptor to the handler."""
        if self._handler is None:
            raise SignalingError(f"Room {self.room_id} has no subscriber")

        envelope = SignalingEnvelope(
            type=EnvelopeType(descriptor['type']),
            payload=descriptor,
            room=self.room_id,
        )
        logger.info(f"Imported {descriptor['type']} token for room {self.room_id}")

        async with self._handler_lock:
            await self._handler(envelope)

    # === Receive path ===

    def _on_message(self, message: dict):
        """Bus callback: validate and queue an envelope."""
        try:
            envelope = SignalingEnvelope.from_dict(message)
        except SignalingError as e:
            logger.warning(f"Dropping malformed envelope in room {self.room_id}: {e}")
            self.envelopes_dropped += 1
            return

        if envelope.sender == self.peer_id:
            return

        if envelope.room != self.room_id or not envelope.sender:
            logger.warning(f"Dropping unroutable {envelope.type.value} envelope")
            self.envelopes_dropped += 1
            return

        if self._remote_peer is None:
            self._remote_peer = envelope.sender
            logger.info(f"Peer {envelope.sender[:8]} joined room {self.room_id}")
        elif envelope.sender != self._remote_peer:
            logger.warning(
                f"Room {self.room_id} is full, dropping envelope from {envelope.sender[:8]}"
            )
            self.envelopes_dropped += 1
            return

        if self._queue is not None:
            self.envelopes_received += 1
            self._queue.put_nowait(envelope)

    async def _dispatch_loop(self):
        """Hand queued envelopes to the handler one at a time."""
        while True:
            envelope: SignalingEnvelope = await self._queue.get()

            try:
                async with self._handler_lock:
                    await self._handler(envelope)
            except OrbitError as e:
                logger.warning(f"Handler rejected {envelope.type.value}: {e}")
            except Exception as e:
                logger.error(f"Error handling {envelope.type.value}: {e}", exc_info=True)

    def get_stats(self) -> dict:
        """Get broker statistics."""
        return {
            'room_id': self.room_id,
            'peer_id': self.peer_id,
            'remote_peer': self._remote_peer,
            'envelopes_sent': self.envelopes_sent,
            'envelopes_received': self.envelopes_received,
            'envelopes_dropped': self.envelopes_dropped,
        }
