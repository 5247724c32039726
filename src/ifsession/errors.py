from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base error for ifsession domain exceptions."""


class ChecksumMismatch(SessionError):
    """Raised when a snapshot is decoded against a story image it was not taken from."""

    def __init__(self, expected: int, found: int) -> None:
        super().__init__(
            f"Snapshot belongs to a story with checksum 0x{found:04X}, "
            f"current story has 0x{expected:04X}"
        )
        self.expected = expected
        self.found = found


class CorruptChunk(SessionError):
    """Raised when a snapshot container is malformed or truncated, or when
    engine memory and story image are incompatible."""


class NoHistory(SessionError):
    """Raised when undo/redo is requested with nothing available in that direction."""


class EngineFault(SessionError):
    """Raised by an engine adapter for unrecoverable conditions or unsupported features.

    Unsupported-feature faults (``unsupported=True``) are downgraded to a notice by
    the session controller; all others end the session.
    """

    def __init__(self, reason: str, *, unsupported: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.unsupported = unsupported


class IOFailure(SessionError):
    """Raised when a save, restore or autosave disk operation fails."""

    def __init__(self, message: str, path: Optional[object] = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidOperation(SessionError):
    """Raised when an operation cannot be performed in the current state."""
