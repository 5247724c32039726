"""Command line tools for inspecting Quetzal save files."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import codec
from .errors import ChecksumMismatch, CorruptChunk, IOFailure
from .logging_config import configure_logging
from .quetzal import read_snapshot
from .saves import SaveStore
from .settings import SessionSettings
from .story import StoryImage

logger = logging.getLogger("ifsession.cli")


def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise IOFailure(f"Failed to read {path}: {e}", path=path) from e


def cmd_info(args: argparse.Namespace) -> int:
    snapshot = read_snapshot(_read_file(Path(args.file)))
    print(f"file:      {args.file}")
    print(f"story:     release {snapshot.release_number} serial {snapshot.serial} checksum 0x{snapshot.story_checksum:04X}")
    print(f"turn:      {snapshot.turn}")
    print(f"saved:     {snapshot.timestamp.isoformat()}")
    print(f"pc:        0x{snapshot.program_counter:06X}")
    print(f"frames:    {len(snapshot.stack_frames)}")
    print(f"memory:    {'CMem' if snapshot.compressed else 'UMem'} ({len(snapshot.memory_delta)} bytes)")
    if snapshot.annotation:
        print(f"note:      {snapshot.annotation}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    story = StoryImage.from_bytes(_read_file(Path(args.story)))
    try:
        snapshot = read_snapshot(_read_file(Path(args.file)))
        state = codec.decode(snapshot, story)
    except ChecksumMismatch as e:
        print(f"mismatch: {e}", file=sys.stderr)
        return 1
    except CorruptChunk as e:
        print(f"corrupt: {e}", file=sys.stderr)
        return 1
    print(f"ok: turn {snapshot.turn}, {len(state.memory)} bytes of memory, {len(state.frames)} frames")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    if args.dir:
        directory = Path(args.dir)
    else:
        directory = SessionSettings.load(Path(args.settings) if args.settings else None).save_dir
    saves = SaveStore(directory).list()
    if not saves:
        print(f"No saves in {directory}")
        return 0
    for info in saves:
        print(f"{info.name:<24} turn {info.turn:<6} {info.formatted_saved_when}  0x{info.story_checksum:04X}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ifsession", description="Inspect interactive fiction save files")
    p.add_argument("--settings", help="Path to a settings YAML file")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="cmd")

    info_p = sub.add_parser("info", help="Show what a save file contains")
    info_p.add_argument("file")
    info_p.set_defaults(func=cmd_info)

    verify_p = sub.add_parser("verify", help="Check that a save file can be restored into a story")
    verify_p.add_argument("file")
    verify_p.add_argument("--story", required=True, help="Path to the story file")
    verify_p.set_defaults(func=cmd_verify)

    list_p = sub.add_parser("list", help="List named saves")
    list_p.add_argument("--dir", help="Save directory (defaults to the configured one)")
    list_p.set_defaults(func=cmd_list)
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.WARNING)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except (IOFailure, CorruptChunk) as e:
        logger.error("%s", e)
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
