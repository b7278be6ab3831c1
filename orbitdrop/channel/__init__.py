"""
Channel Module - Peer Transports

Turns a descriptor/candidate exchange into one ordered, reliable,
message-oriented channel.
"""

from .base import DataChannel, PeerTransport, TransportState, validate_descriptor
from .loopback import LoopbackNetwork, LoopbackTransport, LoopbackChannel
from .tcp import TcpTransport, TcpDataChannel, encode_frame, read_frame

__all__ = [
    'DataChannel',
    'PeerTransport',
    'TransportState',
    'validate_descriptor',
    'LoopbackNetwork',
    'LoopbackTransport',
    'LoopbackChannel',
    'TcpTransport',
    'TcpDataChannel',
    'encode_frame',
    'read_frame',
]
