"""
Transfer Sender

Design Decision: Pacing
=======================

Options Considered:
1. Write every chunk immediately
   - Fastest start, but the channel buffers the whole payload
2. Fixed delay between chunks
   - Bounded, but wastes bandwidth on fast links
3. Watermark pacing on the channel's own buffer
   - Write while buffered_amount <= high-water mark
   - Above it, wait for the channel's "buffered amount low" event

Decision: Watermark pacing (high-water mark 2 MiB)

Send Loop (per transfer):
1. Announce metadata
2. If paused, wait for resume (or cancel / channel loss)
3. Read the next <=16KB slice
4. If the channel backlog is above the high-water mark, wait for it to drain
5. Write the chunk, advance the offset, report progress
6. Stop at offset == total size
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set

from .protocol import ControlAction, MetadataAnnounce, TransferControl, encode_chunk
from .records import Direction, TransferRecord, TransferStatus
from .source import PayloadSource
from ..channel.base import DataChannel
from ..config import CHUNK_SIZE, HIGH_WATER_MARK
from ..errors import ConnectionLost, TransferAbort
from ..session.events import EventHub, TransferUpdated

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferRecord], None]
ChannelProvider = Callable[[], Optional[DataChannel]]


@dataclass
class _OutboundTransfer:
    """Mutable state of one running send loop."""
    record: TransferRecord
    source: PayloadSource
    running: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False
    sequence: int = 0


class TransferSender:
    """
    Sends payloads over the current channel, one loop per transfer id.

    Different transfers may run concurrently; their frames interleave but
    each transfer's chunks stay in order.
    """

    def __init__(self, get_channel: ChannelProvider,
                 events: Optional[EventHub] = None,
                 chunk_size: int = CHUNK_SIZE,
                 high_water_mark: int = HIGH_WATER_MARK):
        """
        Initialize the sender.

        Args:
            get_channel: Returns the current channel (or None)
            events: Hub receiving TransferUpdated events
            chunk_size: Payload bytes per chunk frame
            high_water_mark: Backlog above which writes are deferred
        """
        self.get_channel = get_channel
        self.events = events or EventHub()
        self.chunk_size = chunk_size
        self.high_water_mark = high_water_mark

        self._active: Dict[str, _OutboundTransfer] = {}
        self._used_ids: Set[str] = set()

        # Statistics
        self.transfers_completed = 0
        self.bytes_sent = 0
        self.deferred_writes = 0

    def is_active(self, transfer_id: str) -> bool:
        return transfer_id in self._active

    async def send(self, source: PayloadSource,
                   transfer_id: Optional[str] = None,
                   progress_callback: Optional[ProgressCallback] = None) -> TransferRecord:
        """
        Send a payload.

        Raises:
            ConnectionLost: if the channel is not open, or fails mid-transfer
            TransferAbort: if the transfer is cancelled
            ValueError: if transfer_id was already used on this sender

        Returns:
            The completed TransferRecord
        """
        channel = self.get_channel()
        if channel is None or not channel.is_open:
            raise ConnectionLost("Channel is not open")

        transfer_id = transfer_id or uuid.uuid4().hex
        if transfer_id in self._used_ids:
            raise ValueError(f"Transfer id already used: {transfer_id}")
        self._used_ids.add(transfer_id)

        record = TransferRecord(
            id=transfer_id,
            name=source.name,
            total_size=source.size,
            mime_type=source.mime_type,
            direction=Direction.OUTBOUND,
        )
        state = _OutboundTransfer(record=record, source=source)
        state.running.set()
        self._active[transfer_id] = state
        self._emit(record, progress_callback)

        logger.info(f"Sending {record.name} ({record.total_size:,} bytes) as {transfer_id[:8]}")

        try:
            # Metadata goes out before any chunk is queued
            channel.send(MetadataAnnounce(
                transfer_id, record.name, record.total_size, record.mime_type
            ).to_json())

            record.status = TransferStatus.IN_PROGRESS
            self._emit(record, progress_callback)

            await self._run(state, channel, progress_callback)

        except ConnectionLost as e:
            self._finish(record, TransferStatus.FAILED, f"Connection lost: {e}", progress_callback)
            logger.error(f"Transfer {transfer_id[:8]} failed: {e}")
            raise
        except TransferAbort as e:
            self._finish(record, TransferStatus.FAILED, str(e), progress_callback)
            logger.info(f"Transfer {transfer_id[:8]} cancelled at {record.transferred:,} bytes")
            raise
        except Exception as e:
            self._finish(record, TransferStatus.FAILED, str(e), progress_callback)
            logger.error(f"Transfer {transfer_id[:8]} failed: {e}", exc_info=True)
            raise
        finally:
            self._active.pop(transfer_id, None)
            await source.close()

        self._finish(record, TransferStatus.COMPLETED, None, progress_callback)
        self.transfers_completed += 1
        logger.info(f"Transfer {transfer_id[:8]} complete")
        return record

    async def _run(self, state: _OutboundTransfer, channel: DataChannel,
                   progress_callback: Optional[ProgressCallback]):
        record = state.record

        while record.transferred < record.total_size:
            await self._checkpoint(state, channel)

            length = min(self.chunk_size, record.total_size - record.transferred)
            data = await state.source.read(record.transferred, length)
            if len(data) != length:
                raise IOError(
                    f"Source returned {len(data)} bytes at offset {record.transferred}, "
                    f"expected {length}"
                )

            if channel.buffered_amount > self.high_water_mark:
                self.deferred_writes += 1
                await channel.wait_buffer_low()
                await self._checkpoint(state, channel)

            channel.send(encode_chunk(record.id, state.sequence, data))
            state.sequence += 1
            record.transferred += length
            self.bytes_sent += length
            self._emit(record, progress_callback)

    async def _checkpoint(self, state: _OutboundTransfer, channel: DataChannel):
        """Between chunks: honour cancel, wait out a pause."""
        if not state.running.is_set() and not state.cancelled:
            waiters = [
                asyncio.ensure_future(state.running.wait()),
                asyncio.ensure_future(channel.wait_closed()),
            ]
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()

        if state.cancelled:
            raise TransferAbort("Transfer cancelled")
        if not channel.is_open:
            raise ConnectionLost(f"Channel is {channel.ready_state}")

    # === Control ===

    def pause(self, transfer_id: str) -> bool:
        """
        Pause a transfer after the chunk currently being written.

        Returns:
            False if no such transfer is running
        """
        state = self._active.get(transfer_id)
        if state is None or state.cancelled:
            return False

        state.running.clear()
        state.record.status = TransferStatus.PAUSED
        self._notify_peer(transfer_id, ControlAction.PAUSE)
        self._emit(state.record)
        logger.info(f"Paused {transfer_id[:8]} at {state.record.transferred:,} bytes")
        return True

    def resume(self, transfer_id: str) -> bool:
        """Resume a paused transfer from its current offset."""
        state = self._active.get(transfer_id)
        if state is None or state.cancelled:
            return False

        state.record.status = TransferStatus.IN_PROGRESS
        self._notify_peer(transfer_id, ControlAction.RESUME)
        state.running.set()
        self._emit(state.record)
        logger.info(f"Resumed {transfer_id[:8]} at {state.record.transferred:,} bytes")
        return True

    def cancel(self, transfer_id: str) -> bool:
        """Cancel a transfer; takes effect between chunks."""
        state = self._active.get(transfer_id)
        if state is None or state.cancelled:
            return False

        state.cancelled = True
        self._notify_peer(transfer_id, ControlAction.CANCEL)
        state.running.set()
        return True

    def _notify_peer(self, transfer_id: str, action: ControlAction):
        channel = self.get_channel()
        if channel is None:
            return
        try:
            channel.send(TransferControl(transfer_id, action).to_json())
        except ConnectionLost as e:
            logger.warning(f"Could not send {action.value} for {transfer_id[:8]}: {e}")

    def _finish(self, record: TransferRecord, status: TransferStatus,
                error: Optional[str], progress_callback: Optional[ProgressCallback]):
        record.status = status
        record.error = error
        record.completed_at = time.time()
        self._emit(record, progress_callback)

    def _emit(self, record: TransferRecord,
              progress_callback: Optional[ProgressCallback] = None):
        if progress_callback:
            progress_callback(record)
        self.events.emit(TransferUpdated(record))

    def get_stats(self) -> dict:
        """Get sender statistics."""
        return {
            'active_transfers': len(self._active),
            'transfers_completed': self.transfers_completed,
            'bytes_sent': self.bytes_sent,
            'deferred_writes': self.deferred_writes,
        }
