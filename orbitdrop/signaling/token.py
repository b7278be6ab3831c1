"""
Manual Handshake Tokens

When no broker path exists the two users copy/paste (or scan) a token
instead. A token is the base64 of the JSON session descriptor:

    base64({"type": "offer" | "answer", "session": "...", ...})
"""

import base64
import binascii
import json
from typing import Any, Dict

from ..errors import InvalidToken

TOKEN_TYPES = ('offer', 'answer')


def encode_token(descriptor: Dict[str, Any]) -> str:
    """Serialize a session descriptor into an opaque token."""
    if descriptor.get('type') not in TOKEN_TYPES:
        raise ValueError(f"Not a session descriptor: {descriptor.get('type')!r}")
    raw = json.dumps(descriptor, separators=(',', ':')).encode('utf-8')
    return base64.b64encode(raw).decode('ascii')


def decode_token(token: str) -> Dict[str, Any]:
    """
    Parse a token back into a session descriptor.

    Raises:
        InvalidToken: on bad base64, bad JSON, or an unrecognized type
    """
    try:
        raw = base64.b64decode(token.strip(), validate=True)
    except (binascii.Error, ValueError, AttributeError) as e:
        raise InvalidToken(f"Token is not valid base64: {e}")

    try:
        descriptor = json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidToken(f"Token does not contain JSON: {e}")

    if not isinstance(descriptor, dict):
        raise InvalidToken("Token does not contain a descriptor object")

    if descriptor.get('type') not in TOKEN_TYPES:
        raise InvalidToken(f"Unrecognized descriptor type: {descriptor.get('type')!r}")

    return descriptor
