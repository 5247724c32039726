from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import CorruptChunk

logger = logging.getLogger(__name__)

# Z-code header layout (byte offsets)
HEADER_SIZE = 64
_VERSION = 0x00
_RELEASE = 0x02
_STATIC_BASE = 0x0E
_SERIAL = 0x12
_CHECKSUM = 0x1C

SERIAL_LENGTH = 6


def is_valid_serial(serial: str) -> bool:
    """A serial is six single-byte characters, as stored in the story header."""
    if len(serial) != SERIAL_LENGTH:
        return False
    try:
        serial.encode("latin-1")
    except UnicodeEncodeError:
        return False
    return True


@dataclass(frozen=True)
class StoryImage:
    """Immutable copy of the story file as loaded.

    ``original_memory`` is the untouched program memory; the first
    ``dynamic_size`` bytes of it are the baseline that snapshots are
    compressed against.
    """

    original_memory: bytes
    release_number: int
    serial: str
    checksum: int
    dynamic_length: Optional[int] = None
    version: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.original_memory, (bytes, bytearray)):
            raise ValueError("StoryImage.original_memory must be bytes")
        if isinstance(self.original_memory, bytearray):
            object.__setattr__(self, "original_memory", bytes(self.original_memory))
        if not 0 <= self.release_number <= 0xFFFF:
            raise ValueError("StoryImage.release_number must fit in 16 bits")
        if not 0 <= self.checksum <= 0xFFFF:
            raise ValueError("StoryImage.checksum must fit in 16 bits")
        if not is_valid_serial(self.serial):
            raise ValueError("StoryImage.serial must be exactly 6 single-byte characters")
        if self.dynamic_length is not None and not 0 <= self.dynamic_length <= len(self.original_memory):
            raise ValueError("StoryImage.dynamic_length must lie within the original memory")

    @property
    def dynamic_size(self) -> int:
        if self.dynamic_length is None:
            return len(self.original_memory)
        return self.dynamic_length

    @property
    def ifid(self) -> str:
        """Babel identifier for a Z-code story without an embedded IFID."""
        return f"ZCODE-{self.release_number}-{self.serial}-{self.checksum:04X}"

    @classmethod
    def from_bytes(cls, data: bytes) -> "StoryImage":
        """Build a story image from raw Z-code file contents."""
        if len(data) < HEADER_SIZE:
            raise CorruptChunk(f"Story file is too short ({len(data)} bytes)")
        static_base = int.from_bytes(data[_STATIC_BASE:_STATIC_BASE + 2], "big")
        if static_base > len(data):
            raise CorruptChunk(f"Static memory base 0x{static_base:04X} lies beyond end of story file")
        serial = data[_SERIAL:_SERIAL + SERIAL_LENGTH].decode("latin-1")
        return cls(
            original_memory=bytes(data),
            release_number=int.from_bytes(data[_RELEASE:_RELEASE + 2], "big"),
            serial=serial,
            checksum=int.from_bytes(data[_CHECKSUM:_CHECKSUM + 2], "big"),
            dynamic_length=static_base,
            version=data[_VERSION],
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "StoryImage":
        path = Path(path)
        story = cls.from_bytes(path.read_bytes())
        logger.info(
            "Loaded story image %s (v%s, %d bytes dynamic memory)", story.ifid, story.version, story.dynamic_size
        )
        return story
