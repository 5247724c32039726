from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def ensure_dir(path: Path, *, mode: int = 0o700) -> Path:
    """Ensure directory exists with private permissions."""
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, mode)
    except OSError:  # Platform may not support
        logger.debug("Could not chmod directory: %s", path, exc_info=True)
    return path


def write_temp_file(target: Path, data: bytes) -> Path:
    """Write ``data`` to a fresh temporary file next to ``target``.

    The file is flushed and fsynced before returning. Its name starts with a
    dot and ends in ``.tmp`` so it can never be mistaken for ``target``.
    """
    ensure_dir(target.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=TEMP_SUFFIX, dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        discard_temp_file(Path(tmp_name))
        raise
    return Path(tmp_name)


def discard_temp_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.debug("Could not remove temp file %s", path, exc_info=True)


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """Atomically write bytes to a path using a temporary file and replace.

    Ensures that either the old file remains or the new file fully replaces it.
    """
    tmp = write_temp_file(target, data)
    try:
        os.replace(tmp, target)
    except BaseException:
        discard_temp_file(tmp)
        raise
