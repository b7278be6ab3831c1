"""
Transport and Channel Interfaces

A PeerTransport turns exchanged descriptors and candidates into a single
DataChannel: an ordered, reliable, message-oriented pipe carrying text
frames (str) and binary frames (bytes).

Descriptor:
{
    "type": "offer" | "answer",
    "session": "<hex id chosen by the offerer>",
    "candidates": [ {...}, ... ]      # optional, transport specific
}

The channel exposes its outbound backlog as buffered_amount and a
"buffered amount low" wait, used by the sender to pace writes.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import LOW_WATER_MARK
from ..errors import ConnectionLost, NegotiationError

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]
MessageListener = Callable[[Frame], None]
CandidateListener = Callable[[Dict[str, Any]], None]
StateListener = Callable[['TransportState'], None]


class TransportState(Enum):
    """Connectivity state reported by a transport."""
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class DataChannel(ABC):
    """
    Ordered, reliable, message-oriented channel.

    ready_state follows the usual lifecycle:
    connecting -> open -> closed
    """

    def __init__(self, low_water_mark: int = LOW_WATER_MARK):
        self.ready_state = 'connecting'
        self.buffered_amount_low_threshold = low_water_mark

        self._listeners: List[MessageListener] = []
        self._buffer_low = asyncio.Event()
        self._buffer_low.set()
        self._closed = asyncio.Event()

        # Statistics
        self.frames_sent = 0
        self.bytes_sent = 0
        self.frames_received = 0

    @property
    def is_open(self) -> bool:
        return self.ready_state == 'open'

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued for sending but not yet handed to the network."""

    @abstractmethod
    def _send(self, data: Frame):
        """Queue a frame on the underlying link."""

    @abstractmethod
    async def close(self):
        """Close the channel."""

    def on_message(self, listener: MessageListener):
        """Register a listener for incoming frames."""
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def send(self, data: Frame):
        """
        Queue a frame for sending. Never blocks.

        Raises:
            ConnectionLost: if the channel is not open
        """
        if not self.is_open:
            raise ConnectionLost(f"Channel is {self.ready_state}")

        self._send(data)
        self.frames_sent += 1
        self.bytes_sent += len(data)
        self._update_buffer_level()

    async def wait_buffer_low(self):
        """
        Wait until buffered_amount drops to the low-water threshold.

        Raises:
            ConnectionLost: if the channel closes while waiting
        """
        while True:
            if not self.is_open:
                raise ConnectionLost(f"Channel is {self.ready_state}")
            if self.buffered_amount <= self.buffered_amount_low_threshold:
                return

            self._buffer_low.clear()
            waiters = [
                asyncio.ensure_future(self._buffer_low.wait()),
                asyncio.ensure_future(self._closed.wait()),
            ]
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()

    async def wait_closed(self):
        await self._closed.wait()

    def _update_buffer_level(self):
        if self.buffered_amount <= self.buffered_amount_low_threshold:
            self._buffer_low.set()
        else:
            self._buffer_low.clear()

    def _mark_open(self):
        self.ready_state = 'open'

    def _mark_closed(self):
        if self.ready_state == 'closed':
            return
        self.ready_state = 'closed'
        self._closed.set()
        self._buffer_low.set()

    def _dispatch(self, data: Frame):
        """Hand an incoming frame to every listener."""
        self.frames_received += 1
        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception as e:
                logger.error(f"Channel listener error: {e}", exc_info=True)


def validate_descriptor(descriptor: Any, expected_type: str) -> Dict[str, Any]:
    """
    Check the shape shared by every transport's descriptors.

    Raises:
        NegotiationError: if the descriptor is malformed
    """
    if not isinstance(descriptor, dict):
        raise NegotiationError("Descriptor must be an object")

    if descriptor.get('type') != expected_type:
        raise NegotiationError(
            f"Expected {expected_type} descriptor, got {descriptor.get('type')!r}"
        )

    session = descriptor.get('session')
    if not isinstance(session, str) or not session:
        raise NegotiationError("Descriptor has no session id")

    candidates = descriptor.get('candidates', [])
    if not isinstance(candidates, list):
        raise NegotiationError("Descriptor candidates must be a list")

    return descriptor


class PeerTransport(ABC):
    """
    Negotiates one DataChannel with a single remote peer.

    The offerer calls open_channel() and create_offer(), then applies the
    answer. The answerer applies the offer, then calls create_answer().
    Candidates may be added on either side once a remote description is
    set.
    """

    def __init__(self):
        self.state = TransportState.NEW
        self.local_description: Optional[Dict[str, Any]] = None
        self.remote_description: Optional[Dict[str, Any]] = None

        self._candidate_listeners: List[CandidateListener] = []
        self._state_listeners: List[StateListener] = []

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    @property
    @abstractmethod
    def channel(self) -> Optional[DataChannel]:
        """The negotiated channel, once connected."""

    def on_candidate(self, listener: CandidateListener):
        """Register a listener for locally discovered candidates."""
        self._candidate_listeners.append(listener)

    def on_state_change(self, listener: StateListener):
        """Register a listener for connectivity state changes."""
        self._state_listeners.append(listener)

    def _emit_candidate(self, candidate: Dict[str, Any]):
        for listener in list(self._candidate_listeners):
            try:
                listener(candidate)
            except Exception as e:
                logger.error(f"Candidate listener error: {e}", exc_info=True)

    def _set_state(self, state: TransportState):
        if state == self.state:
            return
        logger.debug(f"Transport state {self.state.value} -> {state.value}")
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener error: {e}", exc_info=True)

    @abstractmethod
    async def open_channel(self):
        """Open the local channel endpoint ahead of negotiation (offerer)."""

    @abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        """Create and store the local offer descriptor."""

    @abstractmethod
    async def create_answer(self) -> Dict[str, Any]:
        """Create and store the local answer descriptor."""

    @abstractmethod
    async def set_remote_description(self, descriptor: Dict[str, Any]):
        """Apply the peer's descriptor. Raises NegotiationError if malformed."""

    @abstractmethod
    async def add_candidate(self, candidate: Dict[str, Any]):
        """Apply one remote candidate. Raises NegotiationError if rejected."""

    @abstractmethod
    async def close(self):
        """Tear down the channel and any listening endpoint."""
