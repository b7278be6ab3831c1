"""
TCP Peer Transport

Design Decision: Channel Framing
================================

Options Considered:
1. One TCP connection per transfer
   - Simple, but every transfer pays a handshake
   - Loses the single ordered channel the protocol relies on

2. One TCP connection with length-prefixed frames
   - Ordered and reliable for free
   - Text and binary frames interleave on one stream
   - Backpressure comes from the transport's write buffer

Decision: Single TCP connection, length-prefixed frames

Frame Format:
```
+----------------+-----------+----------------+
| Length (4B)    | Kind (1B) | Body           |
+----------------+-----------+----------------+
Kind: 0 = text (UTF-8), 1 = binary
```

Negotiation:
- The offerer listens eagerly (open_channel) and advertises its addresses
  as candidates {"host": ..., "port": ...}
- The answerer dials each candidate once and sends a hello frame
  carrying the session id; the offerer replies with a welcome frame
- First successful dial wins; later ones are closed
- If an open channel drops, the answerer re-dials the same candidates
  every retry_interval and the offerer accepts a fresh hello for the
  same session; the coordinator bounds how long this may take
"""

import asyncio
import json
import secrets
import struct
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .base import (
    DataChannel, Frame, PeerTransport, TransportState, validate_descriptor
)
from ..config import HIGH_WATER_MARK, LOW_WATER_MARK
from ..errors import ConnectionLost, NegotiationError
from ..interfaces import get_local_addresses

logger = logging.getLogger(__name__)

FRAME_TEXT = 0
FRAME_BINARY = 1

FRAME_HEADER = struct.Struct('>IB')

# Sanity limit; chunks are 16KB plus a small header
MAX_FRAME_SIZE = 1024 * 1024


def encode_frame(data: Frame) -> bytes:
    """Serialize one frame."""
    if isinstance(data, str):
        body = data.encode('utf-8')
        kind = FRAME_TEXT
    else:
        body = bytes(data)
        kind = FRAME_BINARY
    return FRAME_HEADER.pack(len(body), kind) + body


async def read_raw_frame(reader: asyncio.StreamReader) -> Optional[Tuple[int, bytes]]:
    """
    Read one frame's kind and body from a stream.

    Returns:
        (kind, body), or None when the stream ends

    Raises:
        ValueError: if the length prefix exceeds MAX_FRAME_SIZE (the
            stream cannot be resynchronised after that)
    """
    try:
        header = await reader.readexactly(FRAME_HEADER.size)
        length, kind = FRAME_HEADER.unpack(header)

        if length > MAX_FRAME_SIZE:
            raise ValueError(f"Frame too large: {length}")

        body = await reader.readexactly(length) if length > 0 else b''

    except asyncio.IncompleteReadError:
        return None

    return kind, body


def decode_frame(kind: int, body: bytes) -> Frame:
    """
    Turn a raw frame into str or bytes.

    Raises:
        ValueError: on an unknown kind or a text body that is not UTF-8
    """
    if kind == FRAME_TEXT:
        return body.decode('utf-8')
    if kind == FRAME_BINARY:
        return body
    raise ValueError(f"Unknown frame kind: {kind}")


async def read_frame(reader: asyncio.StreamReader) -> Optional[Frame]:
    """
    Read and decode one frame from a stream.

    Returns:
        str or bytes, or None when the stream ends
    """
    raw = await read_raw_frame(reader)
    if raw is None:
        return None
    return decode_frame(*raw)


class TcpDataChannel(DataChannel):
    """DataChannel over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 high_water_mark: int = HIGH_WATER_MARK,
                 low_water_mark: int = LOW_WATER_MARK):
        super().__init__(low_water_mark)
        self.reader = reader
        self.writer = writer
        self._read_task: Optional[asyncio.Task] = None
        self._on_closed = None
        self.frames_dropped = 0

        # drain() blocks above the high mark and resumes at the low mark
        writer.transport.set_write_buffer_limits(high=high_water_mark, low=low_water_mark)

    @property
    def remote_address(self) -> Tuple[str, int]:
        return self.writer.get_extra_info('peername')

    @property
    def buffered_amount(self) -> int:
        if self.writer.transport is None or self.writer.transport.is_closing():
            return 0
        return self.writer.transport.get_write_buffer_size()

    def _send(self, data: Frame):
        self.writer.write(encode_frame(data))

    async def wait_buffer_low(self):
        if not self.is_open:
            raise ConnectionLost(f"Channel is {self.ready_state}")

        try:
            await self.writer.drain()
        except ConnectionError as e:
            self._mark_closed()
            raise ConnectionLost(f"Channel failed while draining: {e}")

        if not self.is_open:
            raise ConnectionLost("Channel closed while draining")

    def start(self, on_closed):
        """Mark the channel open and start the read loop."""
        self._on_closed = on_closed
        self._mark_open()
        self._read_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self):
        try:
            while True:
                raw = await read_raw_frame(self.reader)
                if raw is None:
                    break

                # A bad frame is dropped; the length prefix keeps the stream in sync
                try:
                    frame = decode_frame(*raw)
                except ValueError as e:
                    self.frames_dropped += 1
                    logger.warning(f"Dropping malformed frame: {e}")
                    continue

                self._dispatch(frame)
        except asyncio.CancelledError:
            pass
        except (ConnectionError, ValueError) as e:
            logger.warning(f"Channel read failed: {e}")
        finally:
            was_open = self.is_open
            self._mark_closed()
            self.writer.close()
            if was_open and self._on_closed is not None:
                self._on_closed()

    async def close(self):
        self._mark_closed()
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except ConnectionError:
            pass

        if self._read_task and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None


class TcpTransport(PeerTransport):
    """PeerTransport over a direct TCP connection."""

    def __init__(self, host: str = '0.0.0.0', port: int = 0,
                 connect_timeout: float = 5.0,
                 high_water_mark: int = HIGH_WATER_MARK,
                 low_water_mark: int = LOW_WATER_MARK,
                 retry_interval: float = 1.0):
        super().__init__()
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.high_water_mark = high_water_mark
        self.low_water_mark = low_water_mark
        self.retry_interval = retry_interval

        self.session: Optional[str] = None
        self.server: Optional[asyncio.AbstractServer] = None
        self._channel: Optional[TcpDataChannel] = None
        self._is_offerer = False
        self._closing = False

        self._local_candidates: List[Dict[str, Any]] = []
        self._remote_candidates: List[Tuple[str, int]] = []
        self._attempted: Set[Tuple[str, int]] = set()
        self._dial_tasks: Set[asyncio.Task] = set()
        self._attach_lock = asyncio.Lock()

        # Statistics
        self.candidates_tried = 0
        self.candidates_failed = 0
        self.reconnects = 0

    @property
    def channel(self) -> Optional[TcpDataChannel]:
        return self._channel

    @property
    def listen_port(self) -> Optional[int]:
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    @property
    def _link_up(self) -> bool:
        return self._channel is not None and self._channel.is_open

    # === Offerer side ===

    async def open_channel(self):
        if self.server is not None:
            return

        self._is_offerer = True
        self.server = await asyncio.start_server(self._handle_dial, self.host, self.port)

        port = self.listen_port
        logger.info(f"Channel listener on {self.host}:{port}")

        for address in get_local_addresses(self.host):
            candidate = {'host': address, 'port': port}
            self._local_candidates.append(candidate)
            self._emit_candidate(candidate)

    async def create_offer(self) -> Dict[str, Any]:
        await self.open_channel()
        if self.session is None:
            self.session = secrets.token_hex(8)
        self.local_description = {
            'type': 'offer',
            'session': self.session,
            'candidates': list(self._local_candidates),
        }
        self._set_state(TransportState.CONNECTING)
        return self.local_description

    async def _handle_dial(self, reader: asyncio.StreamReader,
                           writer: asyncio.StreamWriter):
        """Handle an answerer dialing our listener (first dial or re-dial)."""
        peer = writer.get_extra_info('peername')
        try:
            hello = await asyncio.wait_for(read_frame(reader), timeout=self.connect_timeout)
            message = json.loads(hello) if isinstance(hello, str) else None

            if (not isinstance(message, dict) or message.get('type') != 'hello'
                    or message.get('session') != self.session):
                logger.warning(f"Rejected dial from {peer}: bad hello")
                writer.close()
                return

            async with self._attach_lock:
                if self._link_up or self._closing:
                    logger.debug(f"Rejected extra dial from {peer}")
                    writer.close()
                    return

                writer.write(encode_frame(json.dumps({'type': 'welcome'})))
                await writer.drain()
                self._attach(reader, writer)

        except (asyncio.TimeoutError, ConnectionError, ValueError) as e:
            logger.warning(f"Dial from {peer} failed: {e}")
            writer.close()

    # === Answerer side ===

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
        candidates = [self._parse_candidate(c) for c in descriptor.get('candidates', [])]

        self.session = descriptor['session']
        self.remote_description = descriptor
        self._set_state(TransportState.CONNECTING)

        for host, port in candidates:
            self._schedule_dial(host, port)

    async def add_candidate(self, candidate: Dict[str, Any]):
        host, port = self._parse_candidate(candidate)

        if self.remote_description is None:
            raise NegotiationError("Cannot add a candidate before a remote description")

        if not self._is_offerer:
            self._schedule_dial(host, port)

    def _parse_candidate(self, candidate: Any) -> Tuple[str, int]:
        if not isinstance(candidate, dict):
            raise NegotiationError(f"Invalid candidate: {candidate!r}")
        host = candidate.get('host')
        port = candidate.get('port')
        if not isinstance(host, str) or not host or not isinstance(port, int) \
                or not 0 < port < 65536:
            raise NegotiationError(f"Invalid candidate: {candidate!r}")
        return host, port

    def _schedule_dial(self, host: str, port: int):
        """Dial a candidate once; repeated candidates are ignored."""
        key = (host, port)
        if key not in self._remote_candidates:
            self._remote_candidates.append(key)

        if key in self._attempted or self._link_up or self._closing:
            return
        self._attempted.add(key)
        self._spawn_dial(self._dial(host, port))

    def _spawn_dial(self, coro):
        task = asyncio.create_task(coro)
        self._dial_tasks.add(task)
        task.add_done_callback(self._dial_tasks.discard)

    async def _dial(self, host: str, port: int):
        self.candidates_tried += 1
        writer = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout
            )
            writer.write(encode_frame(json.dumps({'type': 'hello', 'session': self.session})))
            await writer.drain()

            reply = await asyncio.wait_for(read_frame(reader), timeout=self.connect_timeout)
            message = json.loads(reply) if isinstance(reply, str) else None
            if not isinstance(message, dict) or message.get('type') != 'welcome':
                raise ConnectionError("Peer did not accept the session")

            async with self._attach_lock:
                if self._link_up or self._closing:
                    writer.close()
                    return
                self._attach(reader, writer)
                logger.info(f"Connected to peer at {host}:{port}")

        except (asyncio.TimeoutError, OSError, ValueError) as e:
            self.candidates_failed += 1
            logger.debug(f"Candidate {host}:{port} failed: {e}")
            if writer is not None:
                writer.close()

    async def _redial_loop(self):
        """Re-dial the offerer's candidates until a channel opens again."""
        while not self._closing and not self._link_up:
            await asyncio.gather(*(self._dial(host, port)
                                   for host, port in self._remote_candidates))
            if self._link_up or self._closing:
                break
            await asyncio.sleep(self.retry_interval)

    # === Shared ===

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        if self._channel is not None:
            self.reconnects += 1

        channel = TcpDataChannel(
            reader, writer,
            high_water_mark=self.high_water_mark,
            low_water_mark=self.low_water_mark,
        )
        self._channel = channel
        channel.start(self._on_channel_closed)
        self._set_state(TransportState.CONNECTED)

    def _on_channel_closed(self):
        if self._closing or self.state != TransportState.CONNECTED:
            return

        logger.warning("Peer channel disconnected")
        self._set_state(TransportState.DISCONNECTED)

        # The offerer keeps listening; the answerer dials back in
        if not self._is_offerer and self._remote_candidates:
            self._spawn_dial(self._redial_loop())

    async def close(self):
        self._closing = True

        for task in list(self._dial_tasks):
            task.cancel()

        if self._channel is not None:
            await self._channel.close()

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        self._set_state(TransportState.CLOSED)
        logger.info("Transport closed")
