"""
Typed Events

Status changes, transfer progress and surfaced errors are delivered as
event objects through an EventHub rather than ad-hoc callbacks.

Ordering: an event is emitted after the state change it describes has
been applied, and listeners see events in emission order.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class StatusChanged:
    """The coordinator moved to a new connection state."""
    state: Any  # ConnectionState
    usable: bool
    label: str
    room_id: Optional[str] = None


@dataclass
class TransferUpdated:
    """A transfer record changed (status or progress)."""
    record: Any  # TransferRecord


@dataclass
class TransferCompleted:
    """An inbound transfer finished; payload holds the assembled bytes."""
    record: Any  # TransferRecord
    payload: bytes = b''


@dataclass
class ErrorRaised:
    """A recoverable error was surfaced (the state machine kept its state)."""
    error: Exception
    context: str = ""


EventListener = Callable[[Any], None]


class EventHub:
    """
    Observer registry plus optional queues.

    Listeners are called synchronously in registration order; queues
    returned by listen() receive every event emitted afterwards.
    """

    def __init__(self):
        self._listeners: List[EventListener] = []
        self._queues: List[asyncio.Queue] = []

    def add_listener(self, listener: EventListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def listen(self) -> asyncio.Queue:
        """Get a queue receiving all future events."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def stop_listening(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, event: Any):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}", exc_info=True)
        for queue in self._queues:
            queue.put_nowait(event)
