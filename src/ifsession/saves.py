from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import List, Optional

from .errors import CorruptChunk, InvalidOperation, IOFailure
from .fsutil import atomic_write_bytes, ensure_dir
from .models import SaveInfo, SaveSlot, Snapshot
from .quetzal import read_snapshot, write_snapshot
from .story import StoryImage

logger = logging.getLogger(__name__)

SAVE_SUFFIX = ".qzl"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def slot_stem(name: str) -> str:
    """Turn a user-entered save name into a safe file stem."""
    stem = _UNSAFE.sub("_", name.strip()).strip("._")
    if not stem:
        raise InvalidOperation(f"Invalid save name: {name!r}")
    return stem[:64]


class SaveStore:
    """Named save files in a single directory, one Quetzal file per save.

    The user-facing name is stored in the file's annotation chunk; the file
    name is derived from it with :func:`slot_stem`.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = ensure_dir(Path(directory))
        self.lock = threading.RLock()

    def path_for(self, name: str) -> Path:
        return self.directory / f"{slot_stem(name)}{SAVE_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def save(self, name: str, snapshot: Snapshot, *, overwrite: bool = True) -> SaveSlot:
        """Write ``snapshot`` under ``name``; a failed write is retried once."""
        path = self.path_for(name)
        with self.lock:
            if path.exists() and not overwrite:
                raise InvalidOperation(f"A save named {name!r} already exists")
            self._write_with_retry(path, write_snapshot(snapshot))
        logger.info("Saved turn %d as %r to %s", snapshot.turn, name, path)
        return SaveSlot(path=path, story_checksum=snapshot.story_checksum, snapshot=snapshot)

    def load(self, name: str, story: Optional[StoryImage] = None) -> SaveSlot:
        """Read the save named ``name``.

        When ``story`` is given the slot is checked against it and
        ChecksumMismatch is raised for saves of another story.
        """
        path = self.path_for(name)
        with self.lock:
            slot = self._read(path)
        if story is not None:
            slot.ensure_compatible(story)
        return slot

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        with self.lock:
            try:
                path.unlink()
            except FileNotFoundError as e:
                raise IOFailure(f"Save not found: {name}", path=path) from e
            except OSError as e:
                raise IOFailure(f"Failed to delete save {name}: {e}", path=path) from e
        logger.info("Deleted save %s", path)

    def list(self, story: Optional[StoryImage] = None) -> List[SaveInfo]:
        """List readable saves, newest first, optionally only those for ``story``."""
        infos: List[SaveInfo] = []
        with self.lock:
            for path in sorted(self.directory.glob(f"*{SAVE_SUFFIX}")):
                try:
                    slot = self._read(path)
                except (IOFailure, CorruptChunk) as e:
                    logger.warning("Skipping unreadable save %s: %s", path, e)
                    continue
                if story is not None and slot.story_checksum != story.checksum:
                    continue
                snap = slot.snapshot
                infos.append(
                    SaveInfo(
                        name=snap.annotation or path.stem,
                        path=path,
                        turn=snap.turn,
                        timestamp=snap.timestamp,
                        story_checksum=slot.story_checksum,
                        annotation=snap.annotation,
                    )
                )
        infos.sort(key=lambda i: i.timestamp, reverse=True)
        return infos

    def import_file(self, source: Path, name: Optional[str] = None, *, overwrite: bool = False) -> SaveSlot:
        """Copy a Quetzal file from elsewhere into the store after validating it."""
        source = Path(source)
        try:
            data = source.read_bytes()
        except OSError as e:
            raise IOFailure(f"Failed to read {source}: {e}", path=source) from e
        snapshot = read_snapshot(data)
        name = name or source.stem
        path = self.path_for(name)
        with self.lock:
            if path.exists() and not overwrite:
                raise InvalidOperation(f"A save named {name!r} already exists")
            self._write_with_retry(path, data)
        logger.info("Imported %s as %s", source, path)
        return SaveSlot(path=path, story_checksum=snapshot.story_checksum, snapshot=snapshot)

    # Internal utilities

    def _read(self, path: Path) -> SaveSlot:
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise IOFailure(f"Save file not found: {path}", path=path) from e
        except OSError as e:
            raise IOFailure(f"Failed to read {path}: {e}", path=path) from e
        snapshot = read_snapshot(data)
        return SaveSlot(path=path, story_checksum=snapshot.story_checksum, snapshot=snapshot)

    def _write_with_retry(self, path: Path, data: bytes) -> None:
        try:
            atomic_write_bytes(path, data)
            return
        except OSError as e:
            logger.warning("Write to %s failed, retrying once: %s", path, e)
        try:
            atomic_write_bytes(path, data)
        except OSError as e:
            raise IOFailure(f"Failed to write {path}: {e}", path=path) from e
