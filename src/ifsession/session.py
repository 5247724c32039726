from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from . import codec
from .autosave import AutosaveScheduler
from .engine import EngineAdapter, EngineState, StepOutcome, StepResult, apply_state, capture_state
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
from .metadata import MetadataLookup
from .models import SaveInfo, SaveSlot, Snapshot
from .saves import SaveStore, slot_stem
from .settings import SessionSettings
from .story import StoryImage

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADED = "loaded"
    RUNNING = "running"
    UNDOING = "undoing"
    REDOING = "redoing"
    SAVING = "saving"
    RESTORING = "restoring"
    QUIT = "quit"


@dataclass
class CommandResult:
    success: bool
    message: str = ""
    code: str = "OK"  # OK | NO_HISTORY | CHECKSUM_MISMATCH | CORRUPT | IO_ERROR | NOT_FOUND | INVALID | ENGINE_FAULT | QUIT
    turn: Optional[int] = None


class SessionController:
    """Single entry point the UI talks to for one play session.

    Owns the story image, history stack, autosave scheduler and save store,
    and serializes every engine access behind a turn lock. Undo, redo and
    restore either complete fully or leave engine state and history exactly as
    they were; failures come back as a :class:`CommandResult` plus a notice
    rather than an exception.
    """

    NOTICE_UNDO = "[UNDO]"
    NOTICE_REDO = "[REDO]"
    NOTICE_NOTHING_TO_UNDO = "Nothing to undo."
    NOTICE_NOTHING_TO_REDO = "Nothing to redo."
    NOTICE_SAVED = "Game saved."
    NOTICE_RESTORED = "Game restored."
    NOTICE_SAVE_ERROR = "Failed to save game."
    NOTICE_WRONG_STORY = "That save belongs to a different story."
    NOTICE_CORRUPT = "That save file is damaged and cannot be restored."
    NOTICE_NOT_FOUND = "Save not found."
    NOTICE_NO_AUTOSAVE = "No autosave to continue from."
    NOTICE_AUTOSAVE_FAILED = "Warning: autosave failed; recent progress may not be on disk."
    NOTICE_STORY_ENDED = "The story has ended."

    def __init__(
        self,
        engine: EngineAdapter,
        settings: Optional[SessionSettings] = None,
        *,
        metadata: Optional[MetadataLookup] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.settings = settings or SessionSettings()
        self.settings.validate()
        self.metadata = metadata
        self._clock = clock
        self._state = SessionState.IDLE
        self._turn_lock = threading.RLock()
        self._notice_lock = threading.Lock()
        self._notices: List[str] = []
        self.story: Optional[StoryImage] = None
        self.history: Optional[HistoryStack] = None
        self.autosave: Optional[AutosaveScheduler] = None
        self.saves: Optional[SaveStore] = None
        self.quit_reason: Optional[str] = None

    # Properties

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def turn(self) -> int:
        current = self.history.current if self.history is not None else None
        return current.turn if current is not None else 0

    @property
    def display_title(self) -> str:
        if self.story is None:
            return ""
        meta = self.metadata.lookup(self.story.ifid) if self.metadata is not None else None
        return meta.byline() if meta is not None else self.story.ifid

    # Lifecycle

    def load(self, story: Optional[StoryImage] = None) -> None:
        """Idle -> Loaded. Without ``story`` the configured story file is read."""
        with self._turn_lock:
            self._require("load", SessionState.IDLE)
            if story is None:
                if self.settings.story_path is None:
                    raise InvalidOperation("No story given and no story_path configured")
                story = StoryImage.from_file(self.settings.story_path)
            self.story = story
            self.history = HistoryStack(self.settings.history.capacity_bytes)
            self.saves = SaveStore(self.settings.save_dir)
            self.autosave = AutosaveScheduler(
                self.settings.autosave_dir / slot_stem(story.ifid),
                self.settings.autosave.policy(),
                slots=self.settings.autosave.slots,
                on_warning=self._autosave_failed,
                clock=self._clock,
            )
            self._state = SessionState.LOADED
            logger.info("Loaded %s (%s)", self.display_title, story.ifid)

    def start(self) -> Snapshot:
        """Loaded -> Running, seeding history with the engine's current state."""
        with self._turn_lock:
            self._require("start", SessionState.LOADED)
            snapshot = self._capture(turn=self.turn)
            self.history.reset(snapshot)
            self._state = SessionState.RUNNING
            logger.info("Session started at turn %d", snapshot.turn)
            return snapshot

    def quit(self, reason: str = "player quit") -> None:
        with self._turn_lock:
            if self._state is SessionState.QUIT:
                return
            self._enter_quit(reason)

    def close(self) -> None:
        self.quit("session closed")

    def __enter__(self) -> "SessionController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Play

    def step(self, command: str) -> CommandResult:
        """Run one turn with ``command`` and record the resulting state."""
        with self._turn_lock:
            self._require("play", SessionState.RUNNING)
            if self._is_risky(command):
                self._autosave_before_risky()
            try:
                result = self.engine.step_turn(command)
            except EngineFault as fault:
                if not fault.unsupported:
                    return self._fatal(fault.reason)
                self._notice(f"[Unsupported: {fault.reason}]")
                result = StepResult.continues()

            if result.outcome is StepOutcome.QUIT:
                self._enter_quit("story ended")
                return CommandResult(True, self.NOTICE_STORY_ENDED, code="QUIT", turn=self.turn)
            if result.outcome is StepOutcome.FATAL_ERROR:
                return self._fatal(result.reason or "unknown engine error")
            for feature in result.unsupported:
                self._notice(f"[Unsupported: {feature}]")

            snapshot = self._capture(turn=self.turn + 1)
            self.history.push(snapshot)
            self.autosave.notify(snapshot)
            return CommandResult(True, turn=snapshot.turn)

    def undo(self) -> CommandResult:
        return self._travel(SessionState.UNDOING)

    def redo(self) -> CommandResult:
        return self._travel(SessionState.REDOING)

    def _travel(self, transient: SessionState) -> CommandResult:
        backwards = transient is SessionState.UNDOING
        with self._turn_lock:
            self._require("undo" if backwards else "redo", SessionState.RUNNING)
            self._state = transient
            try:
                try:
                    target = self.history.undo() if backwards else self.history.redo()
                except NoHistory:
                    message = self.NOTICE_NOTHING_TO_UNDO if backwards else self.NOTICE_NOTHING_TO_REDO
                    return CommandResult(False, message, code="NO_HISTORY", turn=self.turn)
                try:
                    self._apply_state(codec.decode(target, self.story))
                except SessionError as e:
                    # Put the cursor back where it was
                    if backwards:
                        self.history.redo()
                    else:
                        self.history.undo()
                    return self._rejected(e)
                notice = self.NOTICE_UNDO if backwards else self.NOTICE_REDO
                self._notice(notice)
                logger.debug("%s to turn %d", notice, target.turn)
                return CommandResult(True, notice, turn=target.turn)
            finally:
                if self._state is transient:
                    self._state = SessionState.RUNNING

    # Saves

    def save(self, name: str, *, overwrite: bool = True) -> CommandResult:
        """Write the current state to the named save."""
        with self._turn_lock:
            self._require("save", SessionState.RUNNING)
            self._state = SessionState.SAVING
            try:
                snapshot = self._capture(turn=self.turn, annotation=name)
                self.saves.save(name, snapshot, overwrite=overwrite)
            except (IOFailure, InvalidOperation) as e:
                return self._rejected(e, fallback=self.NOTICE_SAVE_ERROR)
            finally:
                if self._state is SessionState.SAVING:
                    self._state = SessionState.RUNNING
            self._notice(self.NOTICE_SAVED)
            return CommandResult(True, self.NOTICE_SAVED, turn=snapshot.turn)

    def restore(self, name: str) -> CommandResult:
        """Replace the engine state with the named save."""
        with self._turn_lock:
            self._require("restore", SessionState.RUNNING, SessionState.LOADED)
            previous = self._state
            self._state = SessionState.RESTORING
            try:
                return self._restore_slot(self.saves.load(name, self.story))
            except SessionError as e:
                return self._rejected(e)
            finally:
                if self._state is SessionState.RESTORING:
                    self._state = previous

    def restore_autosave(self) -> CommandResult:
        """Continue from the most recent autosave slot."""
        with self._turn_lock:
            self._require("restore", SessionState.RUNNING, SessionState.LOADED)
            previous = self._state
            self._state = SessionState.RESTORING
            try:
                self.autosave.flush()
                slot = self.autosave.latest()
                if slot is None:
                    self._notice(self.NOTICE_NO_AUTOSAVE)
                    return CommandResult(False, self.NOTICE_NO_AUTOSAVE, code="NOT_FOUND", turn=self.turn)
                slot.ensure_compatible(self.story)
                return self._restore_slot(slot)
            except SessionError as e:
                return self._rejected(e)
            finally:
                if self._state is SessionState.RESTORING:
                    self._state = previous

    def list_saves(self) -> List[SaveInfo]:
        if self.saves is None or self.story is None:
            raise InvalidOperation("No story loaded")
        return self.saves.list(self.story)

    def _restore_slot(self, slot: SaveSlot) -> CommandResult:
        state = codec.decode(slot.snapshot, self.story)
        self._autosave_before_risky()
        self._apply_state(state)
        self.history.reset(slot.snapshot)
        self._state = SessionState.RUNNING
        self._notice(self.NOTICE_RESTORED)
        logger.info("Restored turn %d from %s", slot.snapshot.turn, slot.path)
        return CommandResult(True, self.NOTICE_RESTORED, turn=slot.snapshot.turn)

    # Notices

    def drain_notices(self) -> List[str]:
        """Return and clear pending user-visible notices."""
        with self._notice_lock:
            notices, self._notices = self._notices, []
        return notices

    def _notice(self, text: str) -> None:
        with self._notice_lock:
            self._notices.append(text)

    def _autosave_failed(self, failure: IOFailure) -> None:
        # Called from the autosave writer thread
        logger.warning("Autosave failure reported to session: %s", failure)
        self._notice(self.NOTICE_AUTOSAVE_FAILED)

    # Internal utilities

    def _require(self, action: str, *states: SessionState) -> None:
        if self._state not in states:
            raise InvalidOperation(f"Cannot {action} while session is {self._state.value}")

    def _autosave_before_risky(self) -> None:
        """Put the current state on disk before something that may lose it.

        Waits for the write, so a notification for the turn that follows cannot
        turn it into a stale write and discard it.
        """
        current = self.history.current
        if current is None:
            return
        self.autosave.notify(current, risky=True)
        self.autosave.flush()

    def _is_risky(self, command: str) -> bool:
        words = command.strip().lower().split()
        return bool(words) and words[0] in self.settings.autosave.risky_commands

    def _capture(self, *, turn: int, annotation: Optional[str] = None) -> Snapshot:
        return codec.encode(capture_state(self.engine), self.story, turn=turn, annotation=annotation)

    def _apply_state(self, state: EngineState) -> None:
        """Write ``state`` into the engine, restoring the prior state if that fails."""
        backup = capture_state(self.engine)
        try:
            apply_state(self.engine, state)
        except Exception as e:  # noqa: BLE001 adapter errors are opaque
            try:
                apply_state(self.engine, backup)
            except Exception:  # noqa: BLE001
                logger.exception("Engine could not be returned to its previous state")
                self._state = SessionState.LOADED
                raise EngineFault(f"Engine rejected state and could not be rolled back: {e}") from e
            raise EngineFault(f"Engine rejected state: {e}") from e

    def _rejected(self, error: SessionError, fallback: Optional[str] = None) -> CommandResult:
        if isinstance(error, ChecksumMismatch):
            code, message = "CHECKSUM_MISMATCH", self.NOTICE_WRONG_STORY
        elif isinstance(error, CorruptChunk):
            code, message = "CORRUPT", self.NOTICE_CORRUPT
        elif isinstance(error, IOFailure) and isinstance(error.__cause__, FileNotFoundError):
            code, message = "NOT_FOUND", self.NOTICE_NOT_FOUND
        elif isinstance(error, IOFailure):
            code, message = "IO_ERROR", fallback or str(error)
        elif isinstance(error, EngineFault):
            code, message = "ENGINE_FAULT", str(error)
        else:
            code, message = "INVALID", str(error)
        logger.warning("%s rejected (%s): %s", self._state.value, code, error)
        self._notice(message)
        return CommandResult(False, message, code=code, turn=self.turn)

    def _fatal(self, reason: str) -> CommandResult:
        logger.error("Fatal engine error at turn %d: %s", self.turn, reason)
        self._enter_quit(reason)
        message = f"Fatal engine error: {reason}"
        self._notice(message)
        return CommandResult(False, message, code="ENGINE_FAULT", turn=self.turn)

    def _enter_quit(self, reason: str) -> None:
        self._state = SessionState.QUIT
        self.quit_reason = reason
        if self.autosave is not None:
            self.autosave.close()
        logger.info("Session ended: %s", reason)
