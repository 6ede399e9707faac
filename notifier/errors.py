"""Exception types raised across the notifier."""
from __future__ import annotations


class NotifierError(Exception):
    """Base class for notifier failures."""


class FetchError(NotifierError):
    """A remote read failed (network error, timeout, bad payload, 5xx)."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class NotAuthorizedError(FetchError):
    """The remote API refused the token for this source (401/403)."""

    def __init__(self, source: str, status_code: int) -> None:
        super().__init__(source, f"not authorized (HTTP {status_code})")
        self.status_code = status_code


class MalformedEventError(NotifierError):
    """A source record cannot be mapped to a notification event."""


class StoreWriteError(NotifierError):
    """A durable store write did not complete."""

    def __init__(self, key: str, cause: Exception) -> None:
        super().__init__(f"failed to persist {key!r}: {cause}")
        self.key = key
        self.cause = cause
