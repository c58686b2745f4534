from __future__ import annotations


class SpillWatchError(Exception):
    """Base class for errors raised by the SpillWatch core."""


class AuthError(SpillWatchError):
    """Missing credentials or a token the identity provider or catalog rejected."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class CatalogError(SpillWatchError):
    """Non-2xx response (or transport failure) from the imagery catalog."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(f"{status} - {message}" if status is not None else message)
        self.status = status
        self.message = message


class StoreError(SpillWatchError):
    """Read or write failure against the detection backing store."""


class DetectionNotFoundError(StoreError, KeyError):
    pass


class ValidationError(SpillWatchError, ValueError):
    """Malformed filter, patch or coordinate, rejected before any network call."""
