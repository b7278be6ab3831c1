"""
Control Protocol

Design Decision: Multiplexing Control and Data
==============================================

Options Considered:
1. Separate channels for control and data
   - Clean separation, but ordering between them is lost
2. Untagged binary chunks for "the current" transfer
   - Smallest frames
   - Breaks as soon as two transfers overlap
3. Text control frames + binary chunks tagged with transfer id and
   sequence number
   - One ordered channel, concurrent transfers reassemble correctly

Decision: Option 3

Text frames (JSON, "type" discriminator):
    {"type": "metadata", "transferId": "...", "name": "...",
     "totalSize": 40000, "mimeType": "text/plain"}
    {"type": "control", "transferId": "...", "action": "pause"|"resume"|"cancel"}

Binary frames:
```
+-----------+------------------+----------------+------------------+
| IdLen (1B)| Transfer id      | Sequence (4B)  | Payload (<=16KB) |
+-----------+------------------+----------------+------------------+
```

Malformed frames decode to None; callers log and drop them.
"""

import json
import struct
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)

MAX_TRANSFER_ID_LENGTH = 255
SEQUENCE = struct.Struct('>I')


class MessageType(Enum):
    """Control message discriminator."""
    METADATA = "metadata"
    CONTROL = "control"


class ControlAction(Enum):
    """Advisory transfer control actions."""
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


@dataclass
class MetadataAnnounce:
    """Announces a transfer before its first chunk."""
    transfer_id: str
    name: str
    total_size: int
    mime_type: str = "application/octet-stream"

    def to_json(self) -> str:
        return json.dumps({
            'type': MessageType.METADATA.value,
            'transferId': self.transfer_id,
            'name': self.name,
            'totalSize': self.total_size,
            'mimeType': self.mime_type,
        })


@dataclass
class TransferControl:
    """Pause/resume/cancel notice for a transfer."""
    transfer_id: str
    action: ControlAction

    def to_json(self) -> str:
        return json.dumps({
            'type': MessageType.CONTROL.value,
            'transferId': self.transfer_id,
            'action': self.action.value,
        })


ControlMessage = Union[MetadataAnnounce, TransferControl]


@dataclass
class Chunk:
    """One slice of a transfer's payload."""
    transfer_id: str
    sequence: int
    payload: bytes


def _valid_transfer_id(value) -> bool:
    if not isinstance(value, str) or not value:
        return False
    if len(value) > MAX_TRANSFER_ID_LENGTH:
        return False
    return value.isascii()


def decode_control(text: str) -> Optional[ControlMessage]:
    """
    Decode a text frame.

    Returns:
        MetadataAnnounce or TransferControl, or None if malformed
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Dropping non-JSON control frame")
        return None

    if not isinstance(data, dict):
        logger.warning("Dropping control frame that is not an object")
        return None

    transfer_id = data.get('transferId')
    if not _valid_transfer_id(transfer_id):
        logger.warning(f"Dropping control frame with bad transferId: {transfer_id!r}")
        return None

    msg_type = data.get('type')

    if msg_type == MessageType.METADATA.value:
        name = data.get('name')
        total_size = data.get('totalSize')
        mime_type = data.get('mimeType') or "application/octet-stream"

        if not isinstance(name, str) or not isinstance(mime_type, str):
            logger.warning(f"Dropping metadata for {transfer_id}: bad name/mimeType")
            return None
        if isinstance(total_size, bool) or not isinstance(total_size, int) or total_size < 0:
            logger.warning(f"Dropping metadata for {transfer_id}: bad totalSize {total_size!r}")
            return None

        return MetadataAnnounce(transfer_id, name, total_size, mime_type)

    if msg_type == MessageType.CONTROL.value:
        try:
            action = ControlAction(data.get('action'))
        except ValueError:
            logger.warning(f"Dropping control for {transfer_id}: unknown action {data.get('action')!r}")
            return None
        return TransferControl(transfer_id, action)

    logger.warning(f"Dropping control frame of unknown type {msg_type!r}")
    return None


def encode_chunk(transfer_id: str, sequence: int, payload: bytes) -> bytes:
    """Serialize a chunk frame."""
    id_bytes = transfer_id.encode('ascii')
    if not 0 < len(id_bytes) <= MAX_TRANSFER_ID_LENGTH:
        raise ValueError(f"Transfer id length out of range: {len(id_bytes)}")
    return bytes([len(id_bytes)]) + id_bytes + SEQUENCE.pack(sequence) + payload


def decode_chunk(data: bytes) -> Optional[Chunk]:
    """
    Decode a binary frame.

    Returns:
        Chunk, or None if the header is truncated or invalid
    """
    if len(data) < 1:
        logger.warning("Dropping empty binary frame")
        return None

    id_length = data[0]
    header_length = 1 + id_length + SEQUENCE.size
    if id_length == 0 or len(data) < header_length:
        logger.warning(f"Dropping truncated chunk frame ({len(data)} bytes)")
        return None

    try:
        transfer_id = data[1:1 + id_length].decode('ascii')
    except UnicodeDecodeError:
        logger.warning("Dropping chunk frame with non-ASCII transfer id")
        return None

    (sequence,) = SEQUENCE.unpack_from(data, 1 + id_length)
    return Chunk(transfer_id, sequence, bytes(data[header_length:]))
