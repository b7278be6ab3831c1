"""
Connection Coordinator

Design Decision: Who Offers
===========================

Options Considered:
1. Both sides offer, resolve glare with a tie-break
   - Symmetric, but needs rollback handling
2. Fixed roles: the room creator (Initiator) always offers
   - No glare possible
   - Joiner (Responder) only ever answers

Decision: Fixed roles
- create_room() -> Initiator, join_room() -> Responder
- The Initiator opens its channel endpoint eagerly, so the first join
  completes without an extra round trip

State Machine:
```
IDLE --create/join--> AWAITING_PEER --offer sent/answered--> NEGOTIATING
NEGOTIATING --connected--> OPEN --disconnected--> DEGRADED --connected--> OPEN
any --close()/failure/timeout--> CLOSED
```

Candidates:
- Remote candidates that arrive before a remote description are queued
  and applied once one is set
- Local candidates found before the peer is known are queued and sent
  right after the Offer/Answer
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .events import ErrorRaised, EventHub, StatusChanged
from ..channel.base import DataChannel, PeerTransport, TransportState
from ..errors import ConnectionLost, NegotiationError, SignalingError
from ..signaling.broker import SignalingBroker
from ..signaling.bus import MessageBus
from ..signaling.envelope import EnvelopeType, SignalingEnvelope
from ..signaling.room import generate_room_code, parse_room_code
from ..signaling.token import decode_token

logger = logging.getLogger(__name__)


class Role(Enum):
    """Fixed negotiation role."""
    INITIATOR = "initiator"
    RESPONDER = "responder"


class ConnectionState(Enum):
    """Coordinator connection state."""
    IDLE = "idle"
    AWAITING_PEER = "awaiting_peer"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    DEGRADED = "degraded"
    CLOSED = "closed"

    @property
    def label(self) -> str:
        return STATE_LABELS[self]

    @property
    def is_usable(self) -> bool:
        return self is ConnectionState.OPEN


STATE_LABELS = {
    ConnectionState.IDLE: "Idle",
    ConnectionState.AWAITING_PEER: "Waiting for peer",
    ConnectionState.NEGOTIATING: "Connecting",
    ConnectionState.OPEN: "Connected",
    ConnectionState.DEGRADED: "Connection interrupted",
    ConnectionState.CLOSED: "Disconnected",
}

StatusCallback = Callable[[bool, str], None]


class ConnectionCoordinator:
    """
    Turns a signaling exchange into an open channel.

    One coordinator serves one room on one endpoint.
    """

    def __init__(self, bus: MessageBus, transport: PeerTransport,
                 events: Optional[EventHub] = None,
                 negotiation_timeout: float = 30.0,
                 peer_id: Optional[str] = None):
        """
        Initialize a coordinator.

        Args:
            bus: Message bus the room's broker publishes on
            transport: Transport to negotiate
            events: Hub receiving StatusChanged / ErrorRaised events
            negotiation_timeout: Seconds NEGOTIATING or DEGRADED may last
                before giving up
            peer_id: Our signaling sender id (random if not provided)
        """
        self.bus = bus
        self.transport = transport
        self.events = events or EventHub()
        self.negotiation_timeout = negotiation_timeout
        self.peer_id = peer_id or uuid.uuid4().hex

        self.state = ConnectionState.IDLE
        self.role: Optional[Role] = None
        self.room_id: Optional[str] = None
        self.broker: Optional[SignalingBroker] = None

        self._pending_remote_candidates: List[Dict[str, Any]] = []
        self._pending_local_candidates: List[Dict[str, Any]] = []
        self._peer_known = False
        self._offer_sent = False
        self._reannounced = False

        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._teardown_task: Optional[asyncio.Task] = None

        self.transport.on_candidate(self._on_local_candidate)
        self.transport.on_state_change(self._on_transport_state)

    @property
    def is_usable(self) -> bool:
        return self.state.is_usable

    @property
    def channel(self) -> Optional[DataChannel]:
        return self.transport.channel

    def on_status(self, callback: StatusCallback):
        """Register a plain (is_usable, human_state) status callback."""
        def adapter(event):
            if isinstance(event, StatusChanged):
                callback(event.usable, event.label)
        self.events.add_listener(adapter)

    # === Room lifecycle ===

    async def create_room(self, room_id: Optional[str] = None) -> str:
        """
        Create a room as Initiator.

        Returns:
            The room code to share with the peer
        """
        self._require_idle()

        self.role = Role.INITIATOR
        self.room_id = parse_room_code(room_id) if room_id else generate_room_code()
        self.broker = SignalingBroker(self.bus, self.room_id, self.peer_id)
        self._transition(ConnectionState.AWAITING_PEER)

        await self.transport.open_channel()
        self.broker.subscribe(self.handle_envelope)
        await self._announce()

        logger.info(f"Created room {self.room_id}")
        return self.room_id

    async def join_room(self, code: str) -> str:
        """
        Join a room as Responder.

        Raises:
            ValueError: if the code is not a valid room code
        """
        self._require_idle()
        room_id = parse_room_code(code)

        self.role = Role.RESPONDER
        self.room_id = room_id
        self.broker = SignalingBroker(self.bus, self.room_id, self.peer_id)
        self._transition(ConnectionState.AWAITING_PEER)

        self.broker.subscribe(self.handle_envelope)
        await self._announce()

        logger.info(f"Joined room {self.room_id}")
        return self.room_id

    async def wait_open(self, timeout: Optional[float] = None):
        """
        Wait until the channel is open.

        Raises:
            ConnectionLost: if the coordinator closes first
            asyncio.TimeoutError: if timeout expires
        """
        if self.state is ConnectionState.OPEN:
            return
        if self.state is ConnectionState.CLOSED:
            raise ConnectionLost("Connection is closed")

        waiters = [
            asyncio.ensure_future(self._opened.wait()),
            asyncio.ensure_future(self._closed.wait()),
        ]
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        if not done:
            raise asyncio.TimeoutError(f"Room {self.room_id} not open after {timeout}s")
        if self.state is not ConnectionState.OPEN:
            raise ConnectionLost(f"Connection {self.state.label.lower()}")

    async def close(self):
        """Tear down the room and the transport."""
        if self.state is ConnectionState.CLOSED:
            if self._teardown_task is not None:
                await self._teardown_task
            return

        self._transition(ConnectionState.CLOSED)
        await self._teardown()

    # === Manual token exchange ===

    async def export_token(self) -> str:
        """
        Export the local descriptor as a manual token.

        The Initiator creates its offer on demand; the Responder can
        export only after an offer has been applied.
        """
        if self.broker is None:
            raise SignalingError("No room to export a token for")

        if self.transport.local_description is None:
            if self.role is not Role.INITIATOR:
                raise SignalingError("No local descriptor yet; import the offer first")
            await self._make_offer()

        return self.broker.export_token(self.transport.local_description)

    async def import_token(self, token: str):
        """
        Apply a manual token as if it arrived over the broker.

        Raises:
            InvalidToken: if the token does not decode (state unchanged)
            NegotiationError: if the descriptor is rejected
        """
        descriptor = decode_token(token)
        if self.broker is None:
            raise SignalingError("Create or join a room before importing a token")

        await self.broker.import_descriptor(descriptor)

    # === Envelope handling ===

    async def handle_envelope(self, envelope: SignalingEnvelope):
        """Process one envelope from the broker."""
        if self.state is ConnectionState.CLOSED:
            logger.debug(f"Ignoring {envelope.type.value} after close")
            return

        if envelope.type is EnvelopeType.ANNOUNCE:
            await self._on_announce(envelope)
        elif envelope.type is EnvelopeType.OFFER:
            await self._on_offer(envelope.payload)
        elif envelope.type is EnvelopeType.ANSWER:
            await self._on_answer(envelope.payload)
        elif envelope.type is EnvelopeType.ICE_CANDIDATE:
            await self._on_remote_candidate(envelope.payload)

    async def _on_announce(self, envelope: SignalingEnvelope):
        if self.role is Role.INITIATOR:
            if self._offer_sent:
                logger.debug("Peer re-announced; offer already sent")
                return
            offer = await self._make_offer()
            await self._send(SignalingEnvelope(EnvelopeType.OFFER, offer))
            self._peer_known = True
            await self._flush_local_candidates()
            return

        # Responder: make sure an Initiator that arrived after us sees us
        if envelope.payload.get('role') == Role.INITIATOR.value and not self._reannounced:
            self._reannounced = True
            await self._announce()

    async def _make_offer(self) -> Dict[str, Any]:
        offer = await self.transport.create_offer()
        self._offer_sent = True
        if self.state is ConnectionState.AWAITING_PEER:
            self._transition(ConnectionState.NEGOTIATING)
        return offer

    async def _on_offer(self, descriptor: Dict[str, Any]):
        if self.role is not Role.RESPONDER:
            logger.warning("Ignoring offer: only the Responder answers")
            return
        if self.transport.has_remote_description:
            logger.debug("Ignoring duplicate offer")
            return

        try:
            await self.transport.set_remote_description(descriptor)
        except NegotiationError as e:
            self._surface(e, "offer")
            raise

        answer = await self.transport.create_answer()
        if self.state is ConnectionState.AWAITING_PEER:
            self._transition(ConnectionState.NEGOTIATING)

        await self._send(SignalingEnvelope(EnvelopeType.ANSWER, answer))
        self._peer_known = True
        await self._flush_local_candidates()
        await self._flush_remote_candidates()

    async def _on_answer(self, descriptor: Dict[str, Any]):
        if self.role is not Role.INITIATOR:
            logger.warning("Ignoring answer: only the Initiator receives answers")
            return
        if self.transport.has_remote_description:
            logger.debug("Ignoring duplicate answer")
            return

        try:
            await self.transport.set_remote_description(descriptor)
        except NegotiationError as e:
            self._surface(e, "answer")
            raise

        self._peer_known = True
        await self._flush_remote_candidates()

    async def _on_remote_candidate(self, candidate: Dict[str, Any]):
        if self.state is ConnectionState.OPEN:
            logger.debug("Ignoring candidate: already open")
            return

        if not self.transport.has_remote_description:
            self._pending_remote_candidates.append(candidate)
            logger.debug(f"Queued remote candidate ({len(self._pending_remote_candidates)} pending)")
            return

        try:
            await self.transport.add_candidate(candidate)
        except NegotiationError as e:
            self._surface(e, "candidate")
            raise

    async def _flush_remote_candidates(self):
        pending = self._pending_remote_candidates
        self._pending_remote_candidates = []
        for candidate in pending:
            try:
                await self.transport.add_candidate(candidate)
            except NegotiationError as e:
                self._surface(e, "queued candidate")

    async def _flush_local_candidates(self):
        pending = self._pending_local_candidates
        self._pending_local_candidates = []
        for candidate in pending:
            await self._send(SignalingEnvelope(EnvelopeType.ICE_CANDIDATE, candidate))

    def _on_local_candidate(self, candidate: Dict[str, Any]):
        """Transport callback: a local candidate was discovered."""
        if self.state in (ConnectionState.OPEN, ConnectionState.CLOSED):
            return

        if not self._peer_known or self.broker is None:
            self._pending_local_candidates.append(candidate)
            return

        asyncio.create_task(
            self._send_quietly(SignalingEnvelope(EnvelopeType.ICE_CANDIDATE, candidate))
        )

    async def _announce(self):
        await self._send(SignalingEnvelope(EnvelopeType.ANNOUNCE, {'role': self.role.value}))

    async def _send(self, envelope: SignalingEnvelope):
        try:
            await self.broker.broadcast(envelope)
        except SignalingError as e:
            self._surface(e, envelope.type.value)
            raise

    async def _send_quietly(self, envelope: SignalingEnvelope):
        try:
            await self._send(envelope)
        except SignalingError:
            pass  # Already surfaced

    def _surface(self, error: Exception, context: str):
        logger.warning(f"Room {self.room_id}: {context} rejected: {error}")
        self.events.emit(ErrorRaised(error=error, context=context))

    # === Transport state ===

    def _on_transport_state(self, state: TransportState):
        if state is TransportState.CONNECTED:
            if self.state in (ConnectionState.AWAITING_PEER,
                              ConnectionState.NEGOTIATING,
                              ConnectionState.DEGRADED):
                self._pending_remote_candidates.clear()
                self._pending_local_candidates.clear()
                self._transition(ConnectionState.OPEN)

        elif state is TransportState.DISCONNECTED:
            if self.state is ConnectionState.OPEN:
                self._transition(ConnectionState.DEGRADED)

        elif state in (TransportState.FAILED, TransportState.CLOSED):
            if self.state is not ConnectionState.CLOSED:
                self._fail(ConnectionLost(f"Transport {state.value}"))

    def _fail(self, error: Exception):
        """Irrecoverable failure: close and clean up in the background."""
        if self.state is ConnectionState.CLOSED:
            return
        self._surface(error, "connection")
        self._transition(ConnectionState.CLOSED)
        self._teardown_task = asyncio.create_task(self._teardown())

    async def _teardown(self):
        try:
            if self.broker is not None:
                await self.broker.unsubscribe()
        finally:
            await self.transport.close()

    def _arm_timeout(self):
        self._cancel_timeout()
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(self.negotiation_timeout, self._on_timeout)

    def _cancel_timeout(self):
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_timeout(self):
        self._timeout_handle = None
        if self.state in (ConnectionState.NEGOTIATING, ConnectionState.DEGRADED):
            logger.warning(
                f"Room {self.room_id}: not open after {self.negotiation_timeout}s, giving up"
            )
            self._fail(ConnectionLost(f"Not open after {self.negotiation_timeout}s"))

    def _transition(self, new_state: ConnectionState):
        if new_state is self.state:
            return

        old_state = self.state
        self.state = new_state
        logger.info(f"Room {self.room_id}: {old_state.value} -> {new_state.value}")

        if new_state is ConnectionState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()

        if new_state in (ConnectionState.OPEN, ConnectionState.CLOSED):
            self._cancel_timeout()
        elif new_state in (ConnectionState.NEGOTIATING, ConnectionState.DEGRADED):
            self._arm_timeout()

        if new_state is ConnectionState.CLOSED:
            self._closed.set()

        self.events.emit(StatusChanged(
            state=new_state,
            usable=new_state.is_usable,
            label=new_state.label,
            room_id=self.room_id,
        ))

    def _require_idle(self):
        if self.state is not ConnectionState.IDLE:
            raise RuntimeError(f"Coordinator already in use ({self.state.value})")

    def get_stats(self) -> dict:
        """Get coordinator statistics."""
        return {
            'room_id': self.room_id,
            'role': self.role.value if self.role else None,
            'state': self.state.value,
            'usable': self.is_usable,
            'pending_remote_candidates': len(self._pending_remote_candidates),
            'pending_local_candidates': len(self._pending_local_candidates),
            'broker': self.broker.get_stats() if self.broker else None,
        }
