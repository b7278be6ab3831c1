"""
Error Taxonomy

Every failure the session and transfer layers surface is one of these.
Decode failures on the data channel are never raised; they are logged
and the frame is dropped.
"""


class OrbitError(Exception):
    """Base class for all orbitdrop errors."""


class SignalingError(OrbitError):
    """A signaling envelope was malformed or could not be routed."""


class InvalidToken(SignalingError, ValueError):
    """A manual handshake token did not decode to a recognized descriptor."""


class NegotiationError(OrbitError):
    """A remote descriptor or candidate was rejected."""


class ConnectionLost(OrbitError):
    """The channel is not open, or failed during a transfer."""


class TransferAbort(OrbitError):
    """A transfer was cancelled explicitly."""
