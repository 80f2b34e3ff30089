"""Custom exceptions for kvmdisk."""

from __future__ import annotations


class ProvisionError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class TeardownError(ProvisionError):
    """Raised when a forced release could not detach a resource."""

    def __init__(self, message: str, remaining=None) -> None:
        super().__init__(message)
        self.remaining = list(remaining or [])


class Interrupted(Exception):
    """Raised from the signal handler installed while a build is running."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"interrupted by signal {signum}")
        self.signum = signum
