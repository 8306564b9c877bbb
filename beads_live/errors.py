# =============================================================================
# beads-live -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any


class BeadsLiveError(Exception):
    """Base exception for all beads-live errors."""


class ConnectionLostError(BeadsLiveError):
    """The connection is down, or dropped while a request was outstanding.

    Recoverable: callers may retry once the connection reports ``open``
    again, or swallow it into an empty result.
    """

    recoverable = True


class ConnectTimeoutError(BeadsLiveError):
    """Opening the WebSocket took longer than the connect timeout."""


class RequestTimeoutError(BeadsLiveError):
    """No reply arrived within the configured request timeout."""


class AuthError(BeadsLiveError):
    """The server closed the connection for auth or policy reasons."""


class ProtocolError(BeadsLiveError):
    """Malformed frames or push envelopes."""


class RequestError(BeadsLiveError):
    """The server answered a request with ``ok: false``."""

    def __init__(
        self,
        code: str = "UNKNOWN_ERROR",
        message: str = "Request failed",
        details: Any = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"[{code}] {message}")
