from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol


@dataclass(frozen=True)
class StoryMetadata:
    """Bibliographic details shown alongside a running story."""

    title: str
    author: str = ""
    release_info: str = ""

    def byline(self) -> str:
        if self.author:
            return f"{self.title} by {self.author}"
        return self.title


class MetadataLookup(Protocol):
    """Read-only source of story metadata keyed by IFID."""

    def lookup(self, ifid: str) -> Optional[StoryMetadata]:
        """Return metadata for the story, or None if unknown."""


class StaticMetadataLookup:
    """MetadataLookup backed by an in-memory mapping."""

    def __init__(self, entries: Optional[Mapping[str, StoryMetadata]] = None) -> None:
        self._entries = dict(entries or {})

    def add(self, ifid: str, metadata: StoryMetadata) -> None:
        self._entries[ifid] = metadata

    def lookup(self, ifid: str) -> Optional[StoryMetadata]:
        return self._entries.get(ifid)
