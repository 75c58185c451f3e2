"""
Error taxonomy shared by the realtime core and the backend clients.
"""

from typing import Any, Dict, Optional


class VoicePilotError(Exception):
    """Base class for all assistant errors."""


class ConnectionFailure(VoicePilotError):
    """The realtime stream could not be established or maintained."""


class ProtocolError(VoicePilotError):
    """The backend reported an error frame."""

    def __init__(self, message: str, event: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.event = event or {}


class ParseAmbiguity(VoicePilotError):
    """No structural pattern matched a model response."""


class ConfigurationError(VoicePilotError):
    """A remote session descriptor could not be built from configuration."""


class CorrelationAbandoned(VoicePilotError):
    """A pending response was dropped because its connection went away."""


class BackendError(VoicePilotError):
    """
    Error returned by a non-realtime language model backend.

    Attributes:
        status_code: HTTP status reported by the backend, if any
        message: Backend-supplied error message
    """

    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(f"[{status_code}] {message}" if status_code else message)
        self.status_code = status_code
        self.message = message


class AuthenticationFailure(BackendError):
    """Invalid or missing credentials (HTTP 401)."""


class RateLimited(BackendError):
    """Backend rate limit hit (HTTP 429)."""


class BackendTimeout(BackendError):
    """The backend did not answer in time."""

    def __init__(self, message: str = "Request timed out"):
        super().__init__(None, message)


class UnknownBackendError(BackendError):
    """Any other backend failure."""
