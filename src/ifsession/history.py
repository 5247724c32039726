from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .errors import NoHistory
from .models import Snapshot
from .quetzal import serialized_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Entry:
    snapshot: Snapshot
    size: int


class HistoryStack:
    """Linear undo/redo over a byte-bounded sequence of snapshots.

    - ``cursor`` indexes the active entry; entries after it are the redo buffer.
    - Pushing drops the redo buffer, then evicts oldest entries while the total
      serialized size exceeds ``capacity_bytes``. The active entry is never evicted,
      so a single snapshot larger than the capacity is still kept.
    - Turn numbers strictly increase from front to back.
    """

    def __init__(self, capacity_bytes: int, *, sizer: Callable[[Snapshot], int] = serialized_size) -> None:
        if capacity_bytes <= 0:
            raise ValueError("capacity_bytes must be positive")
        self.capacity_bytes = capacity_bytes
        self._sizer = sizer
        self._entries: List[_Entry] = []
        self._cursor = -1
        self._total = 0
        self._lock = threading.RLock()

    # Read-only views

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def entries(self) -> Tuple[Snapshot, ...]:
        with self._lock:
            return tuple(e.snapshot for e in self._entries)

    @property
    def current(self) -> Optional[Snapshot]:
        with self._lock:
            if self._cursor < 0:
                return None
            return self._entries[self._cursor].snapshot

    @property
    def total_bytes(self) -> int:
        return self._total

    def can_undo(self) -> bool:
        return self._cursor > 0

    def can_redo(self) -> bool:
        return 0 <= self._cursor < len(self._entries) - 1

    def __len__(self) -> int:
        return len(self._entries)

    # Mutations

    def push(self, snapshot: Snapshot) -> None:
        with self._lock:
            if self._cursor >= 0 and snapshot.turn <= self._entries[self._cursor].snapshot.turn:
                raise ValueError(
                    f"Snapshot turn {snapshot.turn} does not follow turn {self._entries[self._cursor].snapshot.turn}"
                )
            dropped = self._entries[self._cursor + 1:]
            if dropped:
                del self._entries[self._cursor + 1:]
                self._total -= sum(e.size for e in dropped)
                logger.debug("Dropped %d redo entries", len(dropped))
            entry = _Entry(snapshot, self._sizer(snapshot))
            self._entries.append(entry)
            self._total += entry.size
            self._cursor = len(self._entries) - 1
            self._evict()

    def _evict(self) -> None:
        evicted = 0
        while self._total > self.capacity_bytes and self._cursor > 0:
            oldest = self._entries.pop(0)
            self._total -= oldest.size
            self._cursor -= 1
            evicted += 1
        if evicted:
            logger.debug(
                "Evicted %d history entries (%d/%d bytes in use)", evicted, self._total, self.capacity_bytes
            )

    def undo(self) -> Snapshot:
        with self._lock:
            if self._cursor <= 0:
                raise NoHistory("Nothing to undo")
            self._cursor -= 1
            return self._entries[self._cursor].snapshot

    def redo(self) -> Snapshot:
        with self._lock:
            if self._cursor < 0 or self._cursor >= len(self._entries) - 1:
                raise NoHistory("Nothing to redo")
            self._cursor += 1
            return self._entries[self._cursor].snapshot

    def reset(self, snapshot: Optional[Snapshot] = None) -> None:
        """Discard all entries, optionally seeding the stack with ``snapshot``."""
        with self._lock:
            self._entries.clear()
            self._cursor = -1
            self._total = 0
        if snapshot is not None:
            self.push(snapshot)
