"""Quetzal (IFZS) container reader and writer.

Layout: an IFF ``FORM`` of type ``IFZS`` holding the chunks

- ``IFhd`` release u16, serial 6 bytes, checksum u16, PC u24
- ``CMem`` or ``UMem`` compressed delta or raw dynamic memory
- ``Stks`` call-stack frames
- ``ANNO`` optional free-text annotation
- ``Sess`` optional: turn u32, memory length u32, write sequence u32,
  ISO-8601 timestamp

All integers are big-endian; odd-length chunks carry one pad byte.
"""
from __future__ import annotations

import logging
import struct
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from .engine import Frame
from .errors import CorruptChunk
from .models import Snapshot

logger = logging.getLogger(__name__)

FORM_ID = b"FORM"
FORM_TYPE = b"IFZS"
HEADER_ID = b"IFhd"
CMEM_ID = b"CMem"
UMEM_ID = b"UMem"
STACK_ID = b"Stks"
ANNOTATION_ID = b"ANNO"
SESSION_ID = b"Sess"

HEADER_LENGTH = 13
UNKNOWN_LENGTH = 0xFFFFFFFF

_FRAME_HEAD = struct.Struct(">3sBBBH")  # return pc, flags, result var, args mask, eval count
_SESSION_HEAD = struct.Struct(">III")  # turn, memory length, sequence

_FLAG_DISCARD = 0x10
_LOCALS_MASK = 0x0F


def _chunk(chunk_id: bytes, data: bytes) -> bytes:
    pad = b"\x00" if len(data) % 2 else b""
    return chunk_id + struct.pack(">I", len(data)) + data + pad


def _u24(value: int) -> bytes:
    return value.to_bytes(3, "big")


def _encode_header(snapshot: Snapshot) -> bytes:
    return (
        struct.pack(">H", snapshot.release_number)
        + snapshot.serial.encode("latin-1")
        + struct.pack(">H", snapshot.story_checksum)
        + _u24(snapshot.program_counter)
    )


def _encode_frames(frames: Tuple[Frame, ...]) -> bytes:
    out = bytearray()
    for frame in frames:
        flags = len(frame.locals) | (_FLAG_DISCARD if frame.discard_result else 0)
        args_mask = (1 << frame.args_supplied) - 1
        out += _FRAME_HEAD.pack(_u24(frame.return_pc), flags, frame.result_var, args_mask, len(frame.eval_stack))
        out += struct.pack(f">{len(frame.locals)}H", *frame.locals)
        out += struct.pack(f">{len(frame.eval_stack)}H", *frame.eval_stack)
    return bytes(out)


def _encode_session(snapshot: Snapshot) -> bytes:
    length = UNKNOWN_LENGTH if snapshot.memory_length is None else snapshot.memory_length
    head = _SESSION_HEAD.pack(snapshot.turn, length, snapshot.sequence)
    return head + snapshot.timestamp.isoformat().encode("ascii")


def write_snapshot(snapshot: Snapshot) -> bytes:
    """Serialize a Snapshot to Quetzal bytes."""
    body = bytearray(FORM_TYPE)
    body += _chunk(HEADER_ID, _encode_header(snapshot))
    body += _chunk(CMEM_ID if snapshot.compressed else UMEM_ID, snapshot.memory_delta)
    body += _chunk(STACK_ID, _encode_frames(snapshot.stack_frames))
    if snapshot.annotation is not None:
        body += _chunk(ANNOTATION_ID, snapshot.annotation.encode("utf-8"))
    body += _chunk(SESSION_ID, _encode_session(snapshot))
    return FORM_ID + struct.pack(">I", len(body)) + bytes(body)


def serialized_size(snapshot: Snapshot) -> int:
    return len(write_snapshot(snapshot))


def iter_chunks(data: bytes) -> Iterator[Tuple[bytes, bytes]]:
    """Yield ``(chunk_id, payload)`` pairs from a Quetzal file."""
    if len(data) < 12 or data[0:4] != FORM_ID:
        raise CorruptChunk("Not an IFF FORM file")
    (form_length,) = struct.unpack(">I", data[4:8])
    if data[8:12] != FORM_TYPE:
        raise CorruptChunk(f"Unexpected FORM type {data[8:12]!r}, expected {FORM_TYPE!r}")
    end = 8 + form_length
    if end > len(data):
        raise CorruptChunk(f"FORM declares {form_length} bytes but only {len(data) - 8} are present")
    pos = 12
    while pos < end:
        if pos + 8 > end:
            raise CorruptChunk(f"Truncated chunk header at offset {pos}")
        chunk_id = data[pos:pos + 4]
        (length,) = struct.unpack(">I", data[pos + 4:pos + 8])
        start = pos + 8
        if start + length > end:
            raise CorruptChunk(f"Chunk {chunk_id!r} at offset {pos} runs past the end of the FORM")
        yield chunk_id, data[start:start + length]
        pos = start + length + (length % 2)


def _decode_header(payload: bytes) -> Tuple[int, str, int, int]:
    if len(payload) < HEADER_LENGTH:
        raise CorruptChunk(f"IFhd chunk is {len(payload)} bytes, expected {HEADER_LENGTH}")
    (release,) = struct.unpack(">H", payload[0:2])
    serial = payload[2:8].decode("latin-1")
    (checksum,) = struct.unpack(">H", payload[8:10])
    pc = int.from_bytes(payload[10:13], "big")
    return release, serial, checksum, pc


def _decode_frames(payload: bytes) -> Tuple[Frame, ...]:
    frames: List[Frame] = []
    pos = 0
    while pos < len(payload):
        if pos + _FRAME_HEAD.size > len(payload):
            raise CorruptChunk(f"Truncated stack frame header at offset {pos}")
        raw_pc, flags, result_var, args_mask, eval_count = _FRAME_HEAD.unpack_from(payload, pos)
        pos += _FRAME_HEAD.size
        n_locals = flags & _LOCALS_MASK
        words = n_locals + eval_count
        if pos + 2 * words > len(payload):
            raise CorruptChunk("Truncated stack frame contents")
        values = struct.unpack(f">{words}H", payload[pos:pos + 2 * words])
        pos += 2 * words
        if args_mask & (args_mask + 1):
            logger.debug("Non-contiguous argument mask 0x%02X; counting supplied arguments", args_mask)
        try:
            frames.append(
                Frame(
                    return_pc=int.from_bytes(raw_pc, "big"),
                    result_var=result_var,
                    discard_result=bool(flags & _FLAG_DISCARD),
                    args_supplied=bin(args_mask).count("1"),
                    locals=values[:n_locals],
                    eval_stack=values[n_locals:],
                )
            )
        except ValueError as e:
            raise CorruptChunk(f"Invalid stack frame: {e}") from e
    return tuple(frames)


def _decode_session(payload: bytes) -> Tuple[int, Optional[int], int, Optional[datetime]]:
    if len(payload) < _SESSION_HEAD.size:
        raise CorruptChunk("Sess chunk is truncated")
    turn, length, sequence = _SESSION_HEAD.unpack(payload[:_SESSION_HEAD.size])
    stamp = payload[_SESSION_HEAD.size:].rstrip(b"\x00")
    timestamp: Optional[datetime] = None
    if stamp:
        try:
            timestamp = datetime.fromisoformat(stamp.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptChunk(f"Invalid timestamp in Sess chunk: {stamp!r}") from e
    return turn, (None if length == UNKNOWN_LENGTH else length), sequence, timestamp


def read_snapshot(data: bytes) -> Snapshot:
    """Parse Quetzal bytes into a Snapshot. Raises CorruptChunk on malformed input."""
    chunks: Dict[bytes, bytes] = {}
    for chunk_id, payload in iter_chunks(data):
        if chunk_id in chunks:
            raise CorruptChunk(f"Duplicate {chunk_id!r} chunk")
        chunks[chunk_id] = payload

    if HEADER_ID not in chunks:
        raise CorruptChunk("Missing IFhd chunk")
    if CMEM_ID in chunks and UMEM_ID in chunks:
        raise CorruptChunk("File holds both CMem and UMem chunks")
    if CMEM_ID not in chunks and UMEM_ID not in chunks:
        raise CorruptChunk("Missing memory chunk (CMem or UMem)")
    if STACK_ID not in chunks:
        raise CorruptChunk("Missing Stks chunk")

    release, serial, checksum, pc = _decode_header(chunks[HEADER_ID])
    compressed = CMEM_ID in chunks
    turn, length, sequence, timestamp = 0, None, 0, None
    if SESSION_ID in chunks:
        turn, length, sequence, timestamp = _decode_session(chunks[SESSION_ID])
    annotation = None
    if ANNOTATION_ID in chunks:
        annotation = chunks[ANNOTATION_ID].decode("utf-8", errors="replace")

    return Snapshot(
        turn=turn,
        memory_delta=chunks[CMEM_ID] if compressed else chunks[UMEM_ID],
        compressed=compressed,
        program_counter=pc,
        release_number=release,
        serial=serial,
        story_checksum=checksum,
        stack_frames=_decode_frames(chunks[STACK_ID]),
        memory_length=length,
        timestamp=timestamp or datetime.now(timezone.utc),
        annotation=annotation,
        sequence=sequence,
    )
