from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from .engine import MAX_PC, Frame
from .errors import ChecksumMismatch
from .story import StoryImage, is_valid_serial


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    """A captured VM state, stored as a delta against the story image.

    ``compressed`` tells whether ``memory_delta`` holds the xor/run-length
    form (``CMem``) or the raw dynamic memory (``UMem``). ``memory_length`` is
    the exact live memory size when known; snapshots read from files written
    by other interpreters may not carry it. ``sequence`` is the write order
    stamped by the autosave scheduler; it is 0 for every other snapshot.
    """

    turn: int
    memory_delta: bytes
    compressed: bool
    program_counter: int
    release_number: int
    serial: str
    story_checksum: int
    stack_frames: Tuple[Frame, ...] = ()
    memory_length: Optional[int] = None
    timestamp: datetime = field(default_factory=_utcnow)
    annotation: Optional[str] = None
    sequence: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "memory_delta", bytes(self.memory_delta))
        object.__setattr__(self, "stack_frames", tuple(self.stack_frames))
        if not 0 <= self.turn <= 0xFFFFFFFF:
            raise ValueError("Snapshot.turn must fit in 32 bits")
        if not 0 <= self.program_counter <= MAX_PC:
            raise ValueError("Snapshot.program_counter must fit in 24 bits")
        if not 0 <= self.release_number <= 0xFFFF:
            raise ValueError("Snapshot.release_number must fit in 16 bits")
        if not 0 <= self.story_checksum <= 0xFFFF:
            raise ValueError("Snapshot.story_checksum must fit in 16 bits")
        if not is_valid_serial(self.serial):
            raise ValueError("Snapshot.serial must be exactly 6 single-byte characters")
        if self.memory_length is not None and not 0 <= self.memory_length <= 0xFFFFFFFF:
            raise ValueError("Snapshot.memory_length must fit in 32 bits")
        if not 0 <= self.sequence <= 0xFFFFFFFF:
            raise ValueError("Snapshot.sequence must fit in 32 bits")

    def is_compatible_with(self, story: StoryImage) -> bool:
        return self.story_checksum == story.checksum


@dataclass(frozen=True)
class SaveSlot:
    """A snapshot persisted on disk, loadable only against a matching story."""

    path: Path
    story_checksum: int
    snapshot: Snapshot

    def ensure_compatible(self, story: StoryImage) -> None:
        if self.story_checksum != story.checksum:
            raise ChecksumMismatch(expected=story.checksum, found=self.story_checksum)


@dataclass(frozen=True)
class SaveInfo:
    """Listing entry for a save file, for display in a saves window."""

    name: str
    path: Path
    turn: int
    timestamp: datetime
    story_checksum: int
    annotation: Optional[str] = None

    @property
    def formatted_saved_when(self) -> str:
        return self.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
