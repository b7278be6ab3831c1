"""
OrbitDrop - room-code negotiated peer-to-peer file transfer.

Two endpoints that know the same short room code find each other over a
signaling bus, negotiate a direct data channel, and stream files over it
in fixed-size chunks with backpressure.
"""

from .config import Config, load_config
from .endpoint import Endpoint
from .errors import (
    OrbitError, SignalingError, InvalidToken, NegotiationError, ConnectionLost, TransferAbort,
)

__version__ = "1.0.0"

__all__ = [
    'Config',
    'load_config',
    'Endpoint',
    'OrbitError',
    'SignalingError',
    'InvalidToken',
    'NegotiationError',
    'ConnectionLost',
    'TransferAbort',
]
