"""Exceptions raised by teleop-rtc sessions.

Every failure in a session is terminal: nothing is retried internally and a
fresh start is needed after any of these.
"""


class SessionError(Exception):
    """Base class for errors that end a session."""

    pass


class TransportOpenFailure(SessionError):
    """Raised when the relay channel closes or errors before reaching open."""

    pass


class TransportClosedError(SessionError):
    """Raised when a frame cannot be sent because the relay channel closed."""

    pass


class NegotiationFailure(SessionError):
    """Raised when a remote description or candidate cannot be applied.

    Covers malformed frames, malformed SDP, and failures creating or
    installing the local answer.
    """

    pass


class ConnectionFailure(SessionError):
    """Raised when the peer connection reaches the failed state."""

    pass


class TransportStateError(RuntimeError):
    """Raised when sending on a transport that is not open."""

    pass


class ProtocolError(ValueError):
    """Raised when a signaling frame cannot be decoded or converted."""

    pass
