"""
Error taxonomy for portal access, caching and change detection.

Callers only need to tell three situations apart: stop and ask the user
for credentials (AuthFatal), try again later (network/timeouts), or
recover by dropping and refetching a cached entry (CacheCorrupt).
`classify_failure` and `exit_code_for` encode that for the command layer.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union


class PortalError(Exception):
    """Base class for every error raised by this project."""


# ---------------------------------------------------------------------------
# Fetch errors
# ---------------------------------------------------------------------------


class FetchError(PortalError):
    """A request to the portal did not yield usable data."""


class AuthExpired(FetchError):
    """The portal rejected the session used for a request."""


class NetworkError(FetchError):
    """Transient transport or server failure."""


class NotFound(FetchError):
    """The requested entity does not exist on the portal."""


class ParseError(FetchError):
    """The portal answered but the payload could not be turned into fields."""


class FetchTimeout(FetchError):
    """A single request exceeded its timeout."""


# ---------------------------------------------------------------------------
# Authentication errors
# ---------------------------------------------------------------------------


class AuthError(PortalError):
    """Login failed."""


class WrongCredentials(AuthError):
    def __init__(self, message: str = "Wrong password or username"):
        super().__init__(message)


class AccessDenied(AuthError):
    def __init__(self, blocked_minutes: Optional[int] = None):
        self.blocked_minutes = blocked_minutes
        if blocked_minutes is not None:
            message = f"Access blocked for {blocked_minutes} minutes due to wrong credentials"
        else:
            message = "Access denied"
        super().__init__(message)


class TemporarilyLocked(AuthError):
    def __init__(self, message: str = "Account temporarily locked after too many failed logins"):
        super().__init__(message)


class AuthFatal(AuthError):
    """Authentication cannot be recovered automatically; credentials must be re-entered."""


# ---------------------------------------------------------------------------
# Local state errors
# ---------------------------------------------------------------------------


class CacheCorrupt(PortalError):
    """A persisted cache, snapshot or session file is unreadable or has a foreign schema."""

    def __init__(self, path: Union[str, Path, None], reason: str):
        self.path = str(path) if path is not None else None
        self.reason = reason
        super().__init__(f"{reason} ({self.path})" if self.path else reason)


class ConfigError(PortalError):
    """Configuration is missing or invalid."""


class StateLocked(PortalError):
    """Another invocation holds the state directory lock."""


class InvocationTimeout(PortalError):
    """The whole command exceeded its time budget."""


class NotificationError(PortalError):
    """A composed notification could not be delivered; its changes stay pending."""


class FieldNotLoaded(PortalError, KeyError):
    """A field was requested that the value's completeness level does not contain."""


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------


class FailureClass(str, Enum):
    """How a caller should react to a failure."""
    AUTH_FATAL = "auth_fatal"
    NETWORK_TRANSIENT = "network_transient"
    CACHE_CORRUPT = "cache_corrupt"
    CONFIG = "config"
    TIMEOUT = "timeout"
    LOCKED = "locked"
    UNKNOWN = "unknown"


_EXIT_CODES = {
    FailureClass.AUTH_FATAL: 3,
    FailureClass.NETWORK_TRANSIENT: 75,  # EX_TEMPFAIL
    FailureClass.CACHE_CORRUPT: 4,
    FailureClass.CONFIG: 78,  # EX_CONFIG
    FailureClass.TIMEOUT: 5,
    FailureClass.LOCKED: 6,
    FailureClass.UNKNOWN: 1,
}


def classify_failure(error: BaseException) -> FailureClass:
    """Map an exception to the reaction a caller should take."""
    if isinstance(error, AuthError):
        return FailureClass.AUTH_FATAL
    if isinstance(error, InvocationTimeout):
        return FailureClass.TIMEOUT
    if isinstance(error, (NetworkError, FetchTimeout, NotFound, ParseError, AuthExpired, NotificationError)):
        return FailureClass.NETWORK_TRANSIENT
    if isinstance(error, CacheCorrupt):
        return FailureClass.CACHE_CORRUPT
    if isinstance(error, ConfigError):
        return FailureClass.CONFIG
    if isinstance(error, StateLocked):
        return FailureClass.LOCKED
    return FailureClass.UNKNOWN


def exit_code_for(failure: FailureClass) -> int:
    return _EXIT_CODES[failure]
