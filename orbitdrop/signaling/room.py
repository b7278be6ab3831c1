"""
Room Codes

A room is a 6-character uppercase alphanumeric code shared out of band
(typed, or scanned from a QR code). QR payloads may also be a URL whose
final path segment is the code.
"""

import secrets
import string

ROOM_CODE_LENGTH = 6
ROOM_ALPHABET = string.ascii_uppercase + string.digits


def generate_room_code() -> str:
    """Generate a new random room code."""
    return ''.join(secrets.choice(ROOM_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def canonicalize(code: str) -> str:
    """
    Canonicalize user input into a room code.

    Strips whitespace, takes the last path segment of a URL and uppercases.
    Does not validate; see is_valid_room_code().
    """
    text = code.strip()
    if len(text) > ROOM_CODE_LENGTH and '/' in text:
        segments = [s for s in text.split('/') if s]
        text = segments[-1] if segments else ''
    return text.upper()


def is_valid_room_code(code: str) -> bool:
    return (
        len(code) == ROOM_CODE_LENGTH
        and all(c in ROOM_ALPHABET for c in code)
    )


def parse_room_code(code: str) -> str:
    """
    Canonicalize and validate a room code.

    Raises:
        ValueError: if the input does not yield a valid code
    """
    room_id = canonicalize(code)
    if not is_valid_room_code(room_id):
        raise ValueError(f"Invalid room code: {code!r}")
    return room_id
