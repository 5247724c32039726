import sys
from pathlib import Path
from typing import List

import pytest

# Ensure 'src' is on sys.path for test imports without installing the package
ROOT = Path(__file__).resolve().parents[1]
src = ROOT / "src"
if str(src) not in sys.path:
    sys.path.insert(0, str(src))

from ifsession.engine import EngineAdapter, Frame, StepResult  # noqa: E402
from ifsession.errors import EngineFault  # noqa: E402
from ifsession.settings import AutosaveSettings, HistorySettings, SessionSettings  # noqa: E402
from ifsession.story import StoryImage  # noqa: E402

STATIC_BASE = 0x100
STORY_SIZE = 0x200


def build_story_bytes(checksum: int = 0xABCD, release: int = 7, serial: bytes = b"250101") -> bytes:
    data = bytearray((i * 7 + 3) % 251 for i in range(STORY_SIZE))
    data[0x00] = 5
    data[0x02:0x04] = release.to_bytes(2, "big")
    data[0x0E:0x10] = STATIC_BASE.to_bytes(2, "big")
    data[0x12:0x18] = serial
    data[0x1C:0x1E] = checksum.to_bytes(2, "big")
    return bytes(data)


class FakeEngine(EngineAdapter):
    """Deterministic stand-in for a Z-machine interpreter.

    Every ordinary command bumps a turn counter in memory, records a hash of
    the command and pushes a value onto the top frame's evaluation stack.
    """

    COUNTER = 0x40
    LOG = 0x48

    def __init__(self, story: StoryImage) -> None:
        self.memory = bytearray(story.original_memory[: story.dynamic_size])
        self.frames: List[Frame] = [Frame(return_pc=0)]
        self.pc = 0x1234
        self.commands: List[str] = []
        self.reject_writes = 0

    def read_dynamic_memory(self) -> bytes:
        return bytes(self.memory)

    def write_dynamic_memory(self, memory: bytes) -> None:
        if self.reject_writes:
            self.reject_writes -= 1
            raise RuntimeError("memory is write protected")
        self.memory = bytearray(memory)

    def get_call_stack(self):
        return list(self.frames)

    def set_call_stack(self, frames) -> None:
        self.frames = list(frames)

    def get_program_counter(self) -> int:
        return self.pc

    def set_program_counter(self, address: int) -> None:
        self.pc = address

    def step_turn(self, command: str) -> StepResult:
        self.commands.append(command)
        word = command.strip().lower()
        if word == "quit":
            return StepResult.quit()
        if word == "crash":
            return StepResult.fatal("illegal opcode 0xEE")
        if word == "explode":
            raise EngineFault("stack overflow")
        if word == "beep":
            raise EngineFault("sound effects", unsupported=True)

        count = (self.memory[self.COUNTER] + 1) % 256
        self.memory[self.COUNTER] = count
        self.memory[self.LOG + count % 8] = sum(command.encode("utf-8")) % 256
        top = self.frames[-1]
        self.frames[-1] = Frame(
            return_pc=top.return_pc,
            locals=top.locals,
            eval_stack=(top.eval_stack + (count,))[-4:],
        )
        self.pc = (self.pc + 4) & 0xFFFFFF
        if word == "sound":
            return StepResult.continues("sound effect 3")
        return StepResult.continues()


@pytest.fixture
def story_bytes() -> bytes:
    return build_story_bytes()


@pytest.fixture
def story(story_bytes) -> StoryImage:
    return StoryImage.from_bytes(story_bytes)


@pytest.fixture
def other_story() -> StoryImage:
    return StoryImage.from_bytes(build_story_bytes(checksum=0x1234))


@pytest.fixture
def engine(story) -> FakeEngine:
    return FakeEngine(story)


@pytest.fixture
def settings(tmp_path: Path) -> SessionSettings:
    return SessionSettings(
        save_dir=tmp_path / "saves",
        autosave=AutosaveSettings(slots=3, every_turns=1),
        history=HistorySettings(capacity_bytes=1024 * 1024),
    )
