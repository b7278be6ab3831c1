"""
Endpoint - Main Controller

This is the main entry point that orchestrates all components:
- ConnectionCoordinator for room pairing and channel negotiation
- TransferSender / TransferReceiver on the negotiated channel
- History persistence and the file insight lookup on completion
"""

import asyncio
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Set

import aiofiles

from .channel.base import PeerTransport
from .channel.tcp import TcpTransport
from .config import CHUNK_SIZE, Config
from .errors import OrbitError
from .insight import InsightLookup, describe_file, mimetype_insight
from .session.coordinator import ConnectionCoordinator, ConnectionState
from .session.events import EventHub, StatusChanged, TransferCompleted, TransferUpdated
from .signaling.bus import BroadcastBus, MessageBus
from .storage.history import HistoryEntry, HistoryStore
from .transfer.records import Direction, TransferRecord, TransferStatus
from .transfer.receiver import TransferReceiver
from .transfer.sender import ProgressCallback, TransferSender
from .transfer.source import BytesSource, FileSource, PayloadSource

logger = logging.getLogger(__name__)


class Endpoint:
    """
    One side of a room.

    Combines all components into a unified interface:
    - create_room() / join_room(code): pair with the other endpoint
    - send_file(path) / send_bytes(...): transfer payloads
    - pause / resume / cancel / remove_transfer: manage transfers
    - get_history(): completed transfers
    """

    def __init__(self, config: Optional[Config] = None,
                 bus: Optional[MessageBus] = None,
                 transport: Optional[PeerTransport] = None,
                 insight_lookup: Optional[InsightLookup] = mimetype_insight,
                 history: Optional[HistoryStore] = None):
        """
        Initialize an endpoint.

        Args:
            config: Endpoint configuration (uses defaults if not provided)
            bus: Signaling bus (LAN broadcast bus if not provided)
            transport: Peer transport (TCP if not provided)
            insight_lookup: Async (name, mime_type, size) -> str
            history: History store (SQLite under data_dir if not provided)
        """
        self.config = config or Config()

        self._owns_bus = bus is None
        self.bus = bus or BroadcastBus(self.config.broadcast_port)

        self.transport = transport or TcpTransport(
            host=self.config.host,
            port=self.config.port,
            connect_timeout=self.config.connect_timeout,
            high_water_mark=self.config.high_water_mark,
            low_water_mark=self.config.low_water_mark,
        )

        self.events = EventHub()
        self.coordinator = ConnectionCoordinator(
            self.bus,
            self.transport,
            events=self.events,
            negotiation_timeout=self.config.negotiation_timeout,
        )
        self.sender = TransferSender(
            lambda: self.coordinator.channel,
            events=self.events,
            chunk_size=CHUNK_SIZE,
            high_water_mark=self.config.high_water_mark,
        )
        self.receiver = TransferReceiver(events=self.events)

        self.history = history or HistoryStore(
            self.config.history_path, self.config.history_limit
        )
        self.insight_lookup = insight_lookup

        # All records this session, oldest first
        self.transfers: Dict[str, TransferRecord] = {}
        self._removed: Set[str] = set()
        self._finalized: Set[str] = set()
        self._attached_channel = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

        self.events.add_listener(self._on_event)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def room_id(self) -> Optional[str]:
        return self.coordinator.room_id

    @property
    def state(self) -> ConnectionState:
        return self.coordinator.state

    async def start(self):
        """Open history storage and the signaling bus."""
        if self._running:
            return

        logger.info("Starting endpoint...")
        Path(self.config.data_dir).mkdir(parents=True, exist_ok=True)

        await self.history.connect()
        if isinstance(self.bus, BroadcastBus) and not self.bus.is_running:
            await self.bus.start()

        self._running = True
        logger.info(f"Endpoint started (data dir: {self.config.data_dir})")

    async def stop(self):
        """Close the room and release resources."""
        if not self._running:
            return

        logger.info("Stopping endpoint...")
        self._running = False

        await self.coordinator.close()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.history.close()
        if self._owns_bus:
            await self.bus.close()

        logger.info("Endpoint stopped")

    # === Room ===

    async def create_room(self, room_id: Optional[str] = None) -> str:
        return await self.coordinator.create_room(room_id)

    async def join_room(self, code: str) -> str:
        return await self.coordinator.join_room(code)

    async def wait_open(self, timeout: Optional[float] = None):
        await self.coordinator.wait_open(timeout)

    async def export_token(self) -> str:
        return await self.coordinator.export_token()

    async def import_token(self, token: str):
        await self.coordinator.import_token(token)

    # === Transfers ===

    async def send_file(self, file_path: Path,
                        transfer_id: Optional[str] = None,
                        progress_callback: Optional[ProgressCallback] = None) -> TransferRecord:
        """Send a file and wait for it to complete."""
        return await self.send(FileSource(Path(file_path)), transfer_id, progress_callback)

    async def send_bytes(self, name: str, data: bytes,
                         mime_type: Optional[str] = None) -> TransferRecord:
        """Send an in-memory payload and wait for it to complete."""
        return await self.send(BytesSource(name, data, mime_type))

    async def send(self, source: PayloadSource,
                   transfer_id: Optional[str] = None,
                   progress_callback: Optional[ProgressCallback] = None) -> TransferRecord:
        return await self.sender.send(
            source, transfer_id=transfer_id, progress_callback=progress_callback
        )

    def start_send(self, file_path: Path) -> str:
        """
        Start sending a file in the background.

        Returns:
            The transfer id; failures are recorded on the transfer's record
        """
        source = FileSource(Path(file_path))
        transfer_id = uuid.uuid4().hex

        async def run():
            try:
                await self.send(source, transfer_id)
            except (OrbitError, OSError, ValueError) as e:
                logger.warning(f"Background send of {source.name} ended: {e}")

        self._spawn(run())
        return transfer_id

    def pause(self, transfer_id: str) -> bool:
        return self.sender.pause(transfer_id)

    def resume(self, transfer_id: str) -> bool:
        return self.sender.resume(transfer_id)

    def cancel(self, transfer_id: str) -> bool:
        return self.sender.cancel(transfer_id)

    def list_transfers(self) -> List[TransferRecord]:
        return list(self.transfers.values())

    def get_transfer(self, transfer_id: str) -> Optional[TransferRecord]:
        return self.transfers.get(transfer_id)

    def remove_transfer(self, transfer_id: str) -> bool:
        """Discard a transfer record, cancelling it if it is still sending."""
        if self.sender.is_active(transfer_id):
            self.sender.cancel(transfer_id)

        self.receiver.remove(transfer_id)
        self._removed.add(transfer_id)
        return self.transfers.pop(transfer_id, None) is not None

    async def get_history(self) -> List[HistoryEntry]:
        """Completed transfers, newest first (empty before start())."""
        if not self.history.is_connected:
            return []
        return await self.history.list_entries()

    # === Event handling ===

    def _on_event(self, event):
        if isinstance(event, TransferUpdated):
            record = event.record
            if record.id not in self._removed:
                self.transfers.setdefault(record.id, record)
            if (record.direction is Direction.OUTBOUND
                    and record.status is TransferStatus.COMPLETED):
                self._spawn(self._finalize(record))

        elif isinstance(event, TransferCompleted):
            self._spawn(self._finalize(event.record, event.payload))

        elif isinstance(event, StatusChanged):
            if event.state is ConnectionState.OPEN:
                channel = self.coordinator.channel
                if channel is not None and channel is not self._attached_channel:
                    self.receiver.attach(channel)
                    self._attached_channel = channel
            elif event.state in (ConnectionState.DEGRADED, ConnectionState.CLOSED):
                self.receiver.fail_incomplete("Connection lost")

    async def _finalize(self, record: TransferRecord, payload: Optional[bytes] = None):
        """Persist a completed transfer, then annotate it."""
        if record.id in self._finalized:
            return
        self._finalized.add(record.id)

        try:
            if payload is not None:
                path = await self._save_payload(record, payload)
                record.local_path = str(path)

            if self.history.is_connected:
                await self.history.append(HistoryEntry(
                    transfer_id=record.id,
                    name=record.name,
                    size=record.total_size,
                    mime_type=record.mime_type,
                    direction=record.direction.value,
                    completed_at=record.completed_at,
                ))
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Could not persist {record.name}: {e}")

        insight = await describe_file(
            self.insight_lookup, record.name, record.mime_type, record.total_size
        )

        if self.history.is_connected:
            try:
                await self.history.set_insight(record.id, insight)
            except sqlite3.Error as e:
                logger.error(f"Could not store insight for {record.name}: {e}")

        record.insight = insight
        self.events.emit(TransferUpdated(record))

    async def _save_payload(self, record: TransferRecord, payload: bytes) -> Path:
        """Write a received payload into the download directory."""
        directory = self.config.received_dir
        directory.mkdir(parents=True, exist_ok=True)

        name = Path(record.name).name or record.id
        path = directory / name
        counter = 0
        while True:
            try:
                # Exclusive create; never overwrite an earlier download
                async with aiofiles.open(path, 'xb') as f:
                    await f.write(payload)
                break
            except FileExistsError:
                counter += 1
                path = directory / f"{Path(name).stem} ({counter}){Path(name).suffix}"

        logger.info(f"Saved {record.name} to {path}")
        return path

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # === Info ===

    def get_stats(self) -> dict:
        """Get complete endpoint statistics."""
        return {
            'running': self._running,
            'connection': self.coordinator.get_stats(),
            'sender': self.sender.get_stats(),
            'receiver': self.receiver.get_stats(),
            'transfers': len(self.transfers),
        }
