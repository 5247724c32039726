"""Background autosave into a fixed set of rotating slot files.

The scheduler owns one writer thread. ``notify`` only records the newest
snapshot and bumps the epoch; the writer serializes the snapshot bound to the
epoch it picked up, writes it to a temporary file and renames it over the next
slot. If another snapshot was notified in the meantime the temporary file is
thrown away and the writer starts over with the newer one, so a slot file is
always a complete snapshot and writes land on disk in epoch order. Every
written slot carries a sequence number one higher than the slot before it,
which is how the newest slot is found again, also across runs.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional

from .errors import CorruptChunk, InvalidOperation, IOFailure
from .fsutil import TEMP_SUFFIX, discard_temp_file, ensure_dir, write_temp_file
from .models import SaveSlot, Snapshot
from .quetzal import read_snapshot, write_snapshot

logger = logging.getLogger(__name__)

SLOT_PREFIX = "autosave-"
SLOT_SUFFIX = ".qzl"


@dataclass(frozen=True)
class AutosavePolicy:
    """When a notified snapshot should be written.

    Triggers combine with OR semantics: the snapshot is written as soon as any
    enabled trigger fires. ``None`` disables the turn or time trigger.
    """

    every_turns: Optional[int] = 1
    every_seconds: Optional[float] = None
    before_risky: bool = True

    def __post_init__(self) -> None:
        if self.every_turns is not None and self.every_turns < 1:
            raise ValueError("AutosavePolicy.every_turns must be at least 1")
        if self.every_seconds is not None and self.every_seconds <= 0:
            raise ValueError("AutosavePolicy.every_seconds must be positive")

    def is_due(self, turns_since: int, seconds_since: float, risky: bool = False) -> bool:
        if risky and self.before_risky:
            return True
        if self.every_turns is not None and turns_since >= self.every_turns:
            return True
        if self.every_seconds is not None and seconds_since >= self.every_seconds:
            return True
        return False


class AutosaveScheduler:
    """Persist the most recent snapshot to ``slots`` rotating files without blocking play."""

    def __init__(
        self,
        directory: Path,
        policy: Optional[AutosavePolicy] = None,
        *,
        slots: int = 3,
        on_warning: Optional[Callable[[IOFailure], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if slots < 1:
            raise ValueError("Autosave needs at least one slot")
        self.directory = ensure_dir(Path(directory))
        self.policy = policy or AutosavePolicy()
        self.slots = slots
        self._on_warning = on_warning
        self._clock = clock

        self._cond = threading.Condition(threading.RLock())
        self._epoch = 0
        self._fired_epoch = 0
        self._written_epoch = 0
        self._latest: Optional[Snapshot] = None
        self._pending = False
        self._busy = False
        self._closed = False
        self._turns_since_fire = 0
        self._last_fire = clock()
        self.last_failure: Optional[IOFailure] = None

        self._remove_stale_temp_files()
        self._sequence = 0
        self._next_slot = self._initial_slot()
        self._thread = threading.Thread(target=self._run, name="ifsession-autosave", daemon=True)
        self._thread.start()

    # Public API

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def written_epoch(self) -> int:
        return self._written_epoch

    def slot_path(self, index: int) -> Path:
        return self.directory / f"{SLOT_PREFIX}{index}{SLOT_SUFFIX}"

    def slot_paths(self) -> List[Path]:
        return [self.slot_path(i) for i in range(self.slots)]

    def notify(self, snapshot: Snapshot, *, risky: bool = False) -> int:
        """Record ``snapshot`` as the newest state and return its epoch.

        Never performs I/O; a write is queued for the writer thread when a
        trigger fires or a write is already in flight. A risky notification
        re-offers an already played state and does not count as a turn.
        """
        with self._cond:
            if self._closed:
                raise InvalidOperation("Autosave scheduler is closed")
            self._epoch += 1
            self._latest = snapshot
            if not risky:
                self._turns_since_fire += 1
            seconds = self._clock() - self._last_fire
            if self._pending or self._busy or self.policy.is_due(self._turns_since_fire, seconds, risky):
                self._schedule()
            return self._epoch

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until no write is queued or in flight. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._busy, timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Finish any queued write and stop the writer thread."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._thread.join(timeout)

    def latest(self) -> Optional[SaveSlot]:
        """Return the most recently written readable slot, if any.

        Slots are ordered by their write sequence; modification time and turn
        only decide between slots written by other tools, which carry none.
        """
        candidates = []
        for path in self.slot_paths():
            try:
                mtime = path.stat().st_mtime_ns
                snapshot = read_snapshot(path.read_bytes())
            except FileNotFoundError:
                continue
            except (OSError, CorruptChunk) as e:
                logger.warning("Skipping unreadable autosave %s: %s", path, e)
                continue
            candidates.append((snapshot.sequence, mtime, snapshot.turn, path, snapshot))
        if not candidates:
            return None
        *_, path, snapshot = max(candidates, key=lambda c: c[:3])
        return SaveSlot(path=path, story_checksum=snapshot.story_checksum, snapshot=snapshot)

    def __enter__(self) -> "AutosaveScheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Writer thread

    def _schedule(self) -> None:
        # Caller holds self._cond
        self._pending = True
        self._fired_epoch = self._epoch
        self._turns_since_fire = 0
        self._last_fire = self._clock()
        self._cond.notify_all()

    def _time_due(self) -> bool:
        if self.policy.every_seconds is None or self._epoch <= self._fired_epoch:
            return False
        return self._clock() - self._last_fire >= self.policy.every_seconds

    def _wait_timeout(self) -> Optional[float]:
        if self.policy.every_seconds is None:
            return None
        remaining = self.policy.every_seconds - (self._clock() - self._last_fire)
        return min(max(remaining, 0.01), self.policy.every_seconds)

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    if self._time_due():
                        self._schedule()
                    else:
                        self._cond.wait(timeout=self._wait_timeout())
                if not self._pending:
                    return
                epoch, snapshot = self._epoch, self._latest
                self._pending = False
                self._busy = True
            try:
                if snapshot is not None:
                    self._write(epoch, snapshot)
            except Exception:  # noqa: BLE001 keep the writer alive
                logger.exception("Unexpected error in autosave writer")
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def _write(self, epoch: int, snapshot: Snapshot) -> None:
        slot = self.slot_path(self._next_slot)
        sequence = self._sequence + 1
        try:
            data = write_snapshot(replace(snapshot, sequence=sequence))
        except ValueError as e:
            failure = IOFailure(f"Autosave of turn {snapshot.turn} could not be serialized: {e}", path=slot)
            failure.__cause__ = e
            self._report(failure)
            return
        last_error: Optional[OSError] = None
        for attempt in (1, 2):
            try:
                tmp = write_temp_file(slot, data)
            except OSError as e:
                last_error = e
                logger.warning("Autosave write attempt %d to %s failed: %s", attempt, slot, e)
                continue
            with self._cond:
                if self._epoch != epoch:
                    discard_temp_file(tmp)
                    logger.debug("Discarded autosave for stale epoch %d (now %d)", epoch, self._epoch)
                    return
                try:
                    os.replace(tmp, slot)
                except OSError as e:
                    discard_temp_file(tmp)
                    last_error = e
                    logger.warning("Autosave rename attempt %d to %s failed: %s", attempt, slot, e)
                    continue
                self._next_slot = (self._next_slot + 1) % self.slots
                self._sequence = sequence
                self._written_epoch = epoch
            logger.info("Autosaved turn %d to %s", snapshot.turn, slot)
            return

        failure = IOFailure(f"Autosave of turn {snapshot.turn} failed: {last_error}", path=slot)
        failure.__cause__ = last_error
        self._report(failure)

    def _report(self, failure: IOFailure) -> None:
        self.last_failure = failure
        logger.warning("Autosave gave up: %s", failure)
        if self._on_warning is not None:
            try:
                self._on_warning(failure)
            except Exception:  # pragma: no cover - observers are external
                logger.exception("Autosave warning handler failed")

    # Startup

    def _initial_slot(self) -> int:
        # Continue the rotation after the newest slot left by an earlier run
        newest = self.latest()
        if newest is None:
            return 0
        self._sequence = newest.snapshot.sequence
        return (self.slot_paths().index(newest.path) + 1) % self.slots

    def _remove_stale_temp_files(self) -> None:
        for tmp in self.directory.glob(f".{SLOT_PREFIX}*{TEMP_SUFFIX}"):
            logger.debug("Removing leftover autosave temp file %s", tmp)
            discard_temp_file(tmp)
