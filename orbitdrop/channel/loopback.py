"""
In-Process Loopback Transport

Two LoopbackTransports sharing a LoopbackNetwork negotiate exactly like
networked transports (offer, answer, candidates) but exchange frames
through memory. Delivery is paced by the event loop: one frame per loop
iteration, so a fast sender genuinely accumulates a backlog and has to
wait for the buffered-amount-low event.

Candidate: {"address": "loop:<hex>"}

A dropped link can be restored: while the network is offline dials fail,
and the answerer keeps re-dialing every retry_interval until it is back.
"""

import asyncio
import logging
import secrets
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from .base import (
    DataChannel, Frame, PeerTransport, TransportState, validate_descriptor
)
from ..config import LOW_WATER_MARK
from ..errors import NegotiationError

logger = logging.getLogger(__name__)


class LoopbackNetwork:
    """Registry of listening loopback transports, keyed by address."""

    def __init__(self):
        self._listeners: Dict[str, 'LoopbackTransport'] = {}
        self.online = True

    def listen(self, transport: 'LoopbackTransport') -> str:
        address = f"loop:{secrets.token_hex(4)}"
        self._listeners[address] = transport
        return address

    def release(self, address: str):
        self._listeners.pop(address, None)

    def lookup(self, address: str) -> Optional['LoopbackTransport']:
        if not self.online:
            return None
        return self._listeners.get(address)

    def restore(self):
        """Bring the network back after a simulated outage."""
        self.online = True


class LoopbackChannel(DataChannel):
    """One side of an in-memory channel pair."""

    def __init__(self, low_water_mark: int = LOW_WATER_MARK):
        super().__init__(low_water_mark)
        self.peer: Optional['LoopbackChannel'] = None
        self._outbox: Deque[Frame] = deque()
        self._buffered = 0
        self._pump_task: Optional[asyncio.Task] = None
        self._on_closed = None

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def _send(self, data: Frame):
        self._outbox.append(data)
        self._buffered += len(data)
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self):
        """Deliver queued frames to the peer, one per loop iteration."""
        while self._outbox and self.is_open:
            await asyncio.sleep(0)
            if not self.is_open:
                break
            frame = self._outbox.popleft()
            self._buffered -= len(frame)
            if self.peer is not None and self.peer.is_open:
                self.peer._dispatch(frame)
            self._update_buffer_level()

    async def close(self):
        self._shutdown()
        if self.peer is not None:
            self.peer._shutdown()

    def _shutdown(self):
        """Close this side without touching the peer."""
        if self.ready_state == 'closed':
            return
        self._outbox.clear()
        self._buffered = 0
        self._mark_closed()
        if self._on_closed is not None:
            self._on_closed()


class LoopbackTransport(PeerTransport):
    """PeerTransport over a LoopbackNetwork."""

    def __init__(self, network: LoopbackNetwork, low_water_mark: int = LOW_WATER_MARK,
                 retry_interval: float = 0.05):
        super().__init__()
        self.network = network
        self.low_water_mark = low_water_mark
        self.retry_interval = retry_interval

        self.address: Optional[str] = None
        self.session: Optional[str] = None
        self._channel: Optional[LoopbackChannel] = None
        self._is_offerer = False
        self._closing = False
        self._remote_addresses: List[str] = []
        self._redial_tasks: Set[asyncio.Task] = set()

        # Statistics
        self.candidates_tried = 0
        self.candidates_failed = 0
        self.reconnects = 0

    @property
    def channel(self) -> Optional[LoopbackChannel]:
        return self._channel

    @property
    def _link_up(self) -> bool:
        return self._channel is not None and self._channel.is_open

    async def open_channel(self):
        if self.address is not None:
            return
        self._is_offerer = True
        self.address = self.network.listen(self)
        logger.debug(f"Loopback listening on {self.address}")
        self._emit_candidate({'address': self.address})

    async def create_offer(self) -> Dict[str, Any]:
        await self.open_channel()
        if self.session is None:
            self.session = secrets.token_hex(8)
        self.local_description = {
            'type': 'offer',
            'session': self.session,
            'candidates': [{'address': self.address}],
        }
        self._set_state(TransportState.CONNECTING)
        return self.local_description

    async def create_answer(self) -> Dict[str, Any]:
        if self.remote_description is None:
            raise NegotiationError("Cannot answer before an offer is applied")
        self.local_description = {'type': 'answer', 'session': self.session}
        return self.local_description

    async def set_remote_description(self, descriptor: Dict[str, Any]):
        if self._is_offerer:
            validate_descriptor(descriptor, 'answer')
            if descriptor['session'] != self.session:
                raise NegotiationError("Answer does not match our offer")
            self.remote_description = descriptor
            return

        validate_descriptor(descriptor, 'offer')
        self.session = descriptor['session']
        self.remote_description = descriptor
        self._set_state(TransportState.CONNECTING)
        for candidate in descriptor.get('candidates', []):
            await self.add_candidate(candidate)

    async def add_candidate(self, candidate: Dict[str, Any]):
        address = candidate.get('address') if isinstance(candidate, dict) else None
        if not isinstance(address, str) or not address.startswith('loop:'):
            raise NegotiationError(f"Invalid loopback candidate: {candidate!r}")

        if self.remote_description is None:
            raise NegotiationError("Cannot add a candidate before a remote description")

        # Only the answerer dials, and not synchronously
        if self._is_offerer:
            return
        if address not in self._remote_addresses:
            self._remote_addresses.append(address)
        if self._link_up:
            return
        asyncio.get_running_loop().call_soon(self._dial, address)

    def _dial(self, address: str):
        if self._link_up or self._closing:
            return

        self.candidates_tried += 1
        target = self.network.lookup(address)
        if target is None or not target._accept(self, self.session):
            self.candidates_failed += 1
            logger.debug(f"Loopback candidate {address} unreachable")

    def _accept(self, dialer: 'LoopbackTransport', session: str) -> bool:
        """Called on the offerer when the answerer dials in."""
        if session != self.session or self._link_up or self._closing:
            return False

        ours = LoopbackChannel(self.low_water_mark)
        theirs = LoopbackChannel(dialer.low_water_mark)
        ours.peer = theirs
        theirs.peer = ours

        self._attach(ours)
        dialer._attach(theirs)
        return True

    def _attach(self, channel: LoopbackChannel):
        if self._channel is not None:
            self.reconnects += 1
        self._channel = channel
        channel._on_closed = self._on_channel_closed
        channel._mark_open()
        self._set_state(TransportState.CONNECTED)

    def _on_channel_closed(self):
        if self._closing or self.state != TransportState.CONNECTED:
            return
        self._set_state(TransportState.DISCONNECTED)

        if not self._is_offerer and self._remote_addresses:
            task = asyncio.get_running_loop().create_task(self._redial_loop())
            self._redial_tasks.add(task)
            task.add_done_callback(self._redial_tasks.discard)

    async def _redial_loop(self):
        while not self._closing and not self._link_up:
            await asyncio.sleep(self.retry_interval)
            for address in self._remote_addresses:
                self._dial(address)

    def drop(self):
        """Break the link and take the network offline until restore()."""
        self.network.online = False
        if self._channel is not None:
            self._channel._shutdown()
            if self._channel.peer is not None:
                self._channel.peer._shutdown()

    async def close(self):
        self._closing = True
        for task in list(self._redial_tasks):
            task.cancel()
        if self._channel is not None:
            await self._channel.close()
        if self.address is not None:
            self.network.release(self.address)
        self._set_state(TransportState.CLOSED)
