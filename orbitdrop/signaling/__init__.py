"""
Signaling Module - Room Pairing

Delivers small envelopes between the two participants of a room, over an
injected message bus or a manual copy/paste token.
"""

from .room import generate_room_code, canonicalize, is_valid_room_code, parse_room_code
from .envelope import EnvelopeType, SignalingEnvelope
from .token import encode_token, decode_token
from .bus import MessageBus, MemoryBus, BroadcastBus, Subscription
from .broker import SignalingBroker

__all__ = [
    'generate_room_code',
    'canonicalize',
    'is_valid_room_code',
    'parse_room_code',
    'EnvelopeType',
    'SignalingEnvelope',
    'encode_token',
    'decode_token',
    'MessageBus',
    'MemoryBus',
    'BroadcastBus',
    'Subscription',
    'SignalingBroker',
]
