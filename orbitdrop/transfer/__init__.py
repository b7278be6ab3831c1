"""
Transfer Module - Chunked Payload Transfer

Control protocol, sender and receiver layered on an open channel.
"""

from .protocol import (
    MessageType, ControlAction, MetadataAnnounce, TransferControl, Chunk,
    decode_control, encode_chunk, decode_chunk,
)
from .records import TransferRecord, TransferStatus, Direction
from .source import PayloadSource, BytesSource, FileSource, get_chunk_count
from .sender import TransferSender
from .receiver import TransferReceiver

__all__ = [
    'MessageType',
    'ControlAction',
    'MetadataAnnounce',
    'TransferControl',
    'Chunk',
    'decode_control',
    'encode_chunk',
    'decode_chunk',
    'TransferRecord',
    'TransferStatus',
    'Direction',
    'PayloadSource',
    'BytesSource',
    'FileSource',
    'get_chunk_count',
    'TransferSender',
    'TransferReceiver',
]
