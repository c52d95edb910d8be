"""
errors.py — Exception hierarchy for the whisper map core.

Every error carries a machine-readable ``kind`` (mirrors ErrorKind in
models/session.py) and a human-readable message. None of these are fatal:
callers turn them into view-state flags or HTTP error responses.
"""

from typing import Optional


class WhisprError(Exception):
    """Base class. ``kind`` is overridden by each subclass."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ParseError(WhisprError):
    """A raw record could not be normalized (bad location or shape)."""

    kind = "parse"


class FetchError(WhisprError):
    """Transport failure or a server-reported failure envelope."""

    kind = "fetch"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class GeolocationError(WhisprError):
    """The position source refused, timed out, or is unavailable."""

    kind = "geolocation"


class DuplicateError(WhisprError):
    kind = "duplicate"


class NotFoundError(WhisprError):
    kind = "not_found"


class InvalidLocationError(WhisprError):
    kind = "invalid_location"


class SessionClosedError(WhisprError):
    """A user event arrived after the session was torn down."""

    kind = "closed"
