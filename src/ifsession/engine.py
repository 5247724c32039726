from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple

MAX_LOCALS = 15
MAX_ARGS = 7
MAX_PC = 0xFFFFFF


def _check_words(name: str, values: Sequence[int]) -> None:
    for v in values:
        if not 0 <= v <= 0xFFFF:
            raise ValueError(f"Frame.{name} values must fit in 16 bits (got {v})")


@dataclass(frozen=True)
class Frame:
    """One routine call on the VM call stack."""

    return_pc: int
    result_var: int = 0
    discard_result: bool = False
    args_supplied: int = 0
    locals: Tuple[int, ...] = ()
    eval_stack: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "locals", tuple(self.locals))
        object.__setattr__(self, "eval_stack", tuple(self.eval_stack))
        if not 0 <= self.return_pc <= MAX_PC:
            raise ValueError("Frame.return_pc must fit in 24 bits")
        if not 0 <= self.result_var <= 0xFF:
            raise ValueError("Frame.result_var must fit in 8 bits")
        if not 0 <= self.args_supplied <= MAX_ARGS:
            raise ValueError(f"Frame.args_supplied must be between 0 and {MAX_ARGS}")
        if len(self.locals) > MAX_LOCALS:
            raise ValueError(f"Frame can hold at most {MAX_LOCALS} locals")
        if len(self.eval_stack) > 0xFFFF:
            raise ValueError("Frame.eval_stack is too deep")
        _check_words("locals", self.locals)
        _check_words("eval_stack", self.eval_stack)


@dataclass(frozen=True)
class EngineState:
    """Dynamic memory, call stack and program counter of a VM at a turn boundary."""

    memory: bytes
    frames: Tuple[Frame, ...] = ()
    program_counter: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "memory", bytes(self.memory))
        object.__setattr__(self, "frames", tuple(self.frames))
        if not 0 <= self.program_counter <= MAX_PC:
            raise ValueError("EngineState.program_counter must fit in 24 bits")


class StepOutcome(str, Enum):
    CONTINUES = "continues"
    QUIT = "quit"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class StepResult:
    """What happened during one turn.

    ``unsupported`` lists features the story asked for that the engine could
    not provide (e.g. "sound effect 3"); the turn still counts as played.
    """

    outcome: StepOutcome
    reason: Optional[str] = None
    unsupported: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def continues(cls, *unsupported: str) -> "StepResult":
        return cls(StepOutcome.CONTINUES, unsupported=tuple(unsupported))

    @classmethod
    def quit(cls) -> "StepResult":
        return cls(StepOutcome.QUIT)

    @classmethod
    def fatal(cls, reason: str) -> "StepResult":
        return cls(StepOutcome.FATAL_ERROR, reason=reason)


class EngineAdapter(ABC):
    """Contract required from the opcode interpreter a session wraps.

    Implementations are not expected to be thread-safe; the session controller
    never calls into an adapter from two threads at once. Restoring a state and
    replaying the same inputs must reproduce identical future state.
    """

    @abstractmethod
    def read_dynamic_memory(self) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def write_dynamic_memory(self, memory: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_call_stack(self) -> Sequence[Frame]:
        raise NotImplementedError

    @abstractmethod
    def set_call_stack(self, frames: Sequence[Frame]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_program_counter(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def set_program_counter(self, address: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def step_turn(self, command: str) -> StepResult:
        """Run the VM until it next waits for input.

        May raise :class:`ifsession.errors.EngineFault`.
        """
        raise NotImplementedError


def capture_state(engine: EngineAdapter) -> EngineState:
    """Copy the adapter's live state into an independently owned EngineState."""
    return EngineState(
        memory=bytes(engine.read_dynamic_memory()),
        frames=tuple(engine.get_call_stack()),
        program_counter=engine.get_program_counter(),
    )


def apply_state(engine: EngineAdapter, state: EngineState) -> None:
    engine.write_dynamic_memory(state.memory)
    engine.set_call_stack(state.frames)
    engine.set_program_counter(state.program_counter)
