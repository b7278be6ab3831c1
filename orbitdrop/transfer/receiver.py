"""
Transfer Receiver

Reassembles inbound transfers from the channel's frames. Every chunk is
tagged with its transfer id and sequence number, so buffers are kept per
transfer id and several inbound transfers can overlap.

Frames that cannot be placed (unknown id, out-of-order sequence, bytes
beyond the announced size) are logged and dropped; they never corrupt a
record.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .protocol import (
    ControlAction, MetadataAnnounce, TransferControl, decode_chunk, decode_control
)
from .records import Direction, TransferRecord, TransferStatus
from ..channel.base import DataChannel, Frame
from ..session.events import EventHub, TransferCompleted, TransferUpdated

logger = logging.getLogger(__name__)


@dataclass
class _InboundBuffer:
    parts: List[bytes] = field(default_factory=list)
    next_sequence: int = 0


class TransferReceiver:
    """Turns metadata, control and chunk frames into completed payloads."""

    def __init__(self, events: Optional[EventHub] = None):
        self.events = events or EventHub()
        self.records: Dict[str, TransferRecord] = {}
        self._buffers: Dict[str, _InboundBuffer] = {}

        # Statistics
        self.frames_dropped = 0
        self.transfers_completed = 0
        self.bytes_received = 0

    def attach(self, channel: DataChannel):
        """Start consuming a channel's frames."""
        channel.on_message(self.handle_frame)

    def detach(self, channel: DataChannel):
        channel.remove_listener(self.handle_frame)

    def get_record(self, transfer_id: str) -> Optional[TransferRecord]:
        return self.records.get(transfer_id)

    def remove(self, transfer_id: str) -> bool:
        """Forget a transfer (user removal)."""
        self._buffers.pop(transfer_id, None)
        return self.records.pop(transfer_id, None) is not None

    def handle_frame(self, frame: Frame):
        if isinstance(frame, str):
            self._handle_text(frame)
        else:
            self._handle_chunk(bytes(frame))

    def fail_incomplete(self, reason: str):
        """Mark every unfinished inbound transfer FAILED (channel lost)."""
        for transfer_id in list(self._buffers):
            record = self.records.get(transfer_id)
            self._buffers.pop(transfer_id, None)
            if record is not None and not record.is_terminal:
                record.status = TransferStatus.FAILED
                record.error = reason
                record.completed_at = time.time()
                self.events.emit(TransferUpdated(record))
                logger.warning(f"Inbound {record.name} failed: {reason}")

    # === Text frames ===

    def _handle_text(self, text: str):
        message = decode_control(text)
        if message is None:
            self.frames_dropped += 1
            return

        if isinstance(message, MetadataAnnounce):
            self._on_metadata(message)
        elif isinstance(message, TransferControl):
            self._on_control(message)

    def _on_metadata(self, message: MetadataAnnounce):
        if message.transfer_id in self.records:
            logger.warning(f"Dropping duplicate metadata for {message.transfer_id[:8]}")
            self.frames_dropped += 1
            return

        record = TransferRecord(
            id=message.transfer_id,
            name=message.name,
            total_size=message.total_size,
            mime_type=message.mime_type,
            direction=Direction.INBOUND,
        )
        self.records[record.id] = record
        self._buffers[record.id] = _InboundBuffer()
        self.events.emit(TransferUpdated(record))

        record.status = TransferStatus.IN_PROGRESS
        self.events.emit(TransferUpdated(record))

        logger.info(f"Receiving {record.name} ({record.total_size:,} bytes)")

        if record.total_size == 0:
            self._complete(record)

    def _on_control(self, message: TransferControl):
        record = self.records.get(message.transfer_id)
        if record is None:
            logger.warning(f"Dropping {message.action.value} for unknown transfer")
            self.frames_dropped += 1
            return

        if record.is_terminal:
            return

        if message.action is ControlAction.PAUSE:
            record.status = TransferStatus.PAUSED
        elif message.action is ControlAction.RESUME:
            record.status = TransferStatus.IN_PROGRESS
        elif message.action is ControlAction.CANCEL:
            self._buffers.pop(record.id, None)
            record.status = TransferStatus.FAILED
            record.error = "Cancelled by sender"
            record.completed_at = time.time()
            logger.info(f"Sender cancelled {record.name}")

        self.events.emit(TransferUpdated(record))

    # === Binary frames ===

    def _handle_chunk(self, data: bytes):
        chunk = decode_chunk(data)
        if chunk is None:
            self.frames_dropped += 1
            return

        buffer = self._buffers.get(chunk.transfer_id)
        record = self.records.get(chunk.transfer_id)
        if buffer is None or record is None:
            logger.warning(f"Dropping chunk for unknown transfer {chunk.transfer_id[:8]}")
            self.frames_dropped += 1
            return

        if chunk.sequence != buffer.next_sequence:
            logger.warning(
                f"Dropping chunk {chunk.sequence} of {record.name}, "
                f"expected {buffer.next_sequence}"
            )
            self.frames_dropped += 1
            return

        if record.transferred + len(chunk.payload) > record.total_size:
            logger.warning(f"Dropping chunk overflowing {record.name}")
            self.frames_dropped += 1
            return

        buffer.parts.append(chunk.payload)
        buffer.next_sequence += 1
        record.transferred += len(chunk.payload)
        self.bytes_received += len(chunk.payload)
        self.events.emit(TransferUpdated(record))

        if record.transferred == record.total_size:
            self._complete(record)

    def _complete(self, record: TransferRecord):
        buffer = self._buffers.pop(record.id)
        payload = b''.join(buffer.parts)

        record.status = TransferStatus.COMPLETED
        record.completed_at = time.time()
        self.transfers_completed += 1

        logger.info(f"Received {record.name} ({len(payload):,} bytes)")
        self.events.emit(TransferUpdated(record))
        self.events.emit(TransferCompleted(record, payload))

    def get_stats(self) -> dict:
        """Get receiver statistics."""
        return {
            'active_transfers': len(self._buffers),
            'transfers_completed': self.transfers_completed,
            'bytes_received': self.bytes_received,
            'frames_dropped': self.frames_dropped,
        }
