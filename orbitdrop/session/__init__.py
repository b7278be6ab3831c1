"""
Session Module - Connection Negotiation

State machine turning a signaling exchange into an open channel.
"""

from .events import EventHub, StatusChanged, TransferUpdated, TransferCompleted, ErrorRaised
from .coordinator import ConnectionCoordinator, ConnectionState, Role

__all__ = [
    'EventHub',
    'StatusChanged',
    'TransferUpdated',
    'TransferCompleted',
    'ErrorRaised',
    'ConnectionCoordinator',
    'ConnectionState',
    'Role',
]
