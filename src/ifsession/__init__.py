"""
ifsession: session-state layer for Z-machine interactive fiction interpreters.

Wraps an opcode interpreter with undo/redo history, Quetzal save files and
background autosave. The UI talks to :class:`SessionController`; engines plug
in by implementing :class:`EngineAdapter`.
"""

from .autosave import AutosavePolicy, AutosaveScheduler
from .engine import EngineAdapter, EngineState, Frame, StepOutcome, StepResult
from .errors import (
    ChecksumMismatch,
    CorruptChunk,
    EngineFault,
    InvalidOperation,
    IOFailure,
    NoHistory,
    SessionError,
)
from .history import HistoryStack
from .metadata import StaticMetadataLookup, StoryMetadata
from .models import SaveInfo, SaveSlot, Snapshot
from .saves import SaveStore
from .session import CommandResult, SessionController, SessionState
from .settings import SessionSettings
from .story import StoryImage

__version__ = "0.1.0"

__all__ = [
    "AutosavePolicy",
    "AutosaveScheduler",
    "ChecksumMismatch",
    "CommandResult",
    "CorruptChunk",
    "EngineAdapter",
    "EngineFault",
    "EngineState",
    "Frame",
    "HistoryStack",
    "IOFailure",
    "InvalidOperation",
    "NoHistory",
    "SaveInfo",
    "SaveSlot",
    "SaveStore",
    "SessionController",
    "SessionError",
    "SessionSettings",
    "SessionState",
    "Snapshot",
    "StaticMetadataLookup",
    "StepOutcome",
    "StepResult",
    "StoryImage",
    "StoryMetadata",
]
