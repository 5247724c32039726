"""Snapshot codec: VM state <-> Snapshot relative to a story image.

Dynamic memory is xor'ed against the story's original memory and the result
is run-length compressed in the Quetzal ``CMem`` style: a non-zero byte is
emitted as-is, a run of ``n`` zero bytes (1 <= n <= 256) is emitted as
``0x00, n - 1``. When that form is not smaller than the raw memory, the raw
memory is stored instead.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .engine import EngineState
from .errors import ChecksumMismatch, CorruptChunk
from .models import Snapshot
from .story import StoryImage

logger = logging.getLogger(__name__)

MAX_ZERO_RUN = 256


def compress_delta(memory: bytes, original: bytes) -> bytes:
    """Xor ``memory`` against ``original`` and run-length encode zero bytes.

    Every zero run is written out, including a trailing one, so the encoded
    form always decompresses to exactly ``len(memory)`` bytes.
    """
    if len(memory) > len(original):
        raise CorruptChunk(
            f"Live memory ({len(memory)} bytes) is larger than the story image ({len(original)} bytes)"
        )
    out = bytearray()
    zeros = 0
    for live, base in zip(memory, original):
        b = live ^ base
        if b == 0:
            zeros += 1
            if zeros == MAX_ZERO_RUN:
                out += bytes((0, MAX_ZERO_RUN - 1))
                zeros = 0
            continue
        if zeros:
            out += bytes((0, zeros - 1))
            zeros = 0
        out.append(b)
    if zeros:
        out += bytes((0, zeros - 1))
    return bytes(out)


def decompress_delta(data: bytes, original: bytes, length: Optional[int] = None) -> bytes:
    """Reverse :func:`compress_delta`, returning the reconstructed memory.

    If ``length`` is given and the encoded delta is shorter (trailing zero runs
    omitted, as other interpreters do), the remainder is taken unchanged from
    ``original``.
    """
    delta = bytearray()
    i = 0
    n = len(data)
    while i < n:
        b = data[i]
        i += 1
        if b == 0:
            if i >= n:
                raise CorruptChunk("Compressed memory ends inside a zero run")
            delta += bytes(data[i] + 1)
            i += 1
        else:
            delta.append(b)
    if length is not None:
        if len(delta) > length:
            raise CorruptChunk(f"Compressed memory expands to {len(delta)} bytes, expected {length}")
        delta += bytes(length - len(delta))
    if len(delta) > len(original):
        raise CorruptChunk(
            f"Compressed memory expands past the story image ({len(delta)} > {len(original)} bytes)"
        )
    return bytes(b ^ base for b, base in zip(delta, original))


def encode(
    state: EngineState,
    story: StoryImage,
    *,
    turn: int = 0,
    timestamp: Optional[datetime] = None,
    annotation: Optional[str] = None,
) -> Snapshot:
    """Capture ``state`` as a Snapshot against ``story``."""
    packed = compress_delta(state.memory, story.original_memory)
    compressed = len(packed) < len(state.memory)
    delta = packed if compressed else state.memory
    logger.debug(
        "Encoded turn %d: %d bytes memory -> %d bytes (%s)",
        turn,
        len(state.memory),
        len(delta),
        "CMem" if compressed else "UMem",
    )
    extra = {} if timestamp is None else {"timestamp": timestamp}
    return Snapshot(
        turn=turn,
        memory_delta=delta,
        compressed=compressed,
        program_counter=state.program_counter,
        release_number=story.release_number,
        serial=story.serial,
        story_checksum=story.checksum,
        stack_frames=state.frames,
        memory_length=len(state.memory),
        annotation=annotation,
        **extra,
    )


def decode(snapshot: Snapshot, story: StoryImage) -> EngineState:
    """Rebuild the EngineState held by ``snapshot``.

    Raises ChecksumMismatch when the snapshot was taken from another story and
    CorruptChunk when its memory cannot be reconstructed.
    """
    if snapshot.story_checksum != story.checksum:
        raise ChecksumMismatch(expected=story.checksum, found=snapshot.story_checksum)
    length = snapshot.memory_length
    if snapshot.compressed:
        if length is None:
            length = story.dynamic_size
        memory = decompress_delta(snapshot.memory_delta, story.original_memory, length)
    else:
        memory = snapshot.memory_delta
        if len(memory) > len(story.original_memory):
            raise CorruptChunk(
                f"Raw memory ({len(memory)} bytes) is larger than the story image "
                f"({len(story.original_memory)} bytes)"
            )
        if length is not None and length != len(memory):
            raise CorruptChunk(f"Raw memory holds {len(memory)} bytes, expected {length}")
    return EngineState(memory=memory, frames=snapshot.stack_frames, program_counter=snapshot.program_counter)
