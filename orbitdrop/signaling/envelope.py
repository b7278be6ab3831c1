"""
Signaling Envelopes

Small JSON-compatible messages exchanged between the two room
participants before the data channel exists.

Wire form:
{
    "type": "announce" | "offer" | "answer" | "ice-candidate",
    "payload": {...},
    "room": "AB12CD",
    "sender": "<peer id>"
}
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import SignalingError


class EnvelopeType(Enum):
    """Signaling message types."""
    ANNOUNCE = "announce"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


@dataclass
class SignalingEnvelope:
    """A single signaling message."""
    type: EnvelopeType
    payload: Dict[str, Any] = field(default_factory=dict)

    # Routing metadata, filled in by the broker
    room: Optional[str] = None
    sender: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'payload': self.payload,
            'room': self.room,
            'sender': self.sender,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'SignalingEnvelope':
        """
        Parse an envelope.

        Raises:
            SignalingError: if the message is not a recognized envelope
        """
        if not isinstance(data, dict):
            raise SignalingError(f"Envelope must be an object, got {type(data).__name__}")

        try:
            msg_type = EnvelopeType(data.get('type'))
        except ValueError:
            raise SignalingError(f"Unknown envelope type: {data.get('type')!r}")

        payload = data.get('payload')
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise SignalingError("Envelope payload must be an object")

        return cls(
            type=msg_type,
            payload=payload,
            room=data.get('room'),
            sender=data.get('sender'),
        )
