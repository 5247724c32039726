from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from .autosave import AutosavePolicy
from .paths import ENV_SAVE_DIR, default_save_dir

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 4 * 1024 * 1024


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _optional(caster: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def cast(value: Any) -> Any:
        if value is None or (isinstance(value, str) and value.strip().lower() in {"", "none", "off"}):
            return None
        return caster(value)

    return cast


@dataclass
class AutosaveSettings:
    slots: int = 3
    every_turns: Optional[int] = 1
    every_seconds: Optional[float] = None
    before_risky: bool = True
    # Commands after which the previous state is hard to get back
    risky_commands: List[str] = field(default_factory=lambda: ["restart", "restore", "quit"])

    def policy(self) -> AutosavePolicy:
        return AutosavePolicy(
            every_turns=self.every_turns,
            every_seconds=self.every_seconds,
            before_risky=self.before_risky,
        )


@dataclass
class HistorySettings:
    capacity_bytes: int = DEFAULT_HISTORY_CAPACITY


@dataclass
class SessionSettings:
    """Configuration surface of a play session.

    Sources, later ones winning:
    - dataclass defaults
    - a user YAML file passed to :meth:`load`
    - environment variables with the ``IFS_`` prefix
    """

    story_path: Optional[Path] = None
    save_dir: Path = field(default_factory=default_save_dir)
    autosave: AutosaveSettings = field(default_factory=AutosaveSettings)
    history: HistorySettings = field(default_factory=HistorySettings)

    @property
    def autosave_dir(self) -> Path:
        return self.save_dir / "autosave"

    def validate(self) -> None:
        """Reject values the session cannot run with."""
        if self.autosave.slots < 1:
            raise ValueError("autosave.slots must be at least 1")
        if self.history.capacity_bytes <= 0:
            raise ValueError("history.capacity_bytes must be positive")
        self.autosave.risky_commands = [c.strip().lower() for c in self.autosave.risky_commands if c.strip()]
        # Raises ValueError for bad trigger values
        self.autosave.policy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "story_path": str(self.story_path) if self.story_path else None,
            "save_dir": str(self.save_dir),
            "autosave": dataclasses.asdict(self.autosave),
            "history": dataclasses.asdict(self.history),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionSettings":
        autosave = dict(data.get("autosave") or {})
        history = dict(data.get("history") or {})
        story_path = data.get("story_path")
        save_dir = data.get("save_dir")
        settings = cls(
            story_path=Path(story_path).expanduser() if story_path else None,
            save_dir=Path(save_dir).expanduser() if save_dir else default_save_dir(),
            autosave=AutosaveSettings(
                slots=int(autosave.get("slots", 3)),
                every_turns=_optional(int)(autosave.get("every_turns", 1)),
                every_seconds=_optional(float)(autosave.get("every_seconds")),
                before_risky=_as_bool(autosave.get("before_risky", True)),
                risky_commands=list(autosave.get("risky_commands", ["restart", "restore", "quit"])),
            ),
            history=HistorySettings(
                capacity_bytes=int(history.get("capacity_bytes", DEFAULT_HISTORY_CAPACITY)),
            ),
        )
        settings.validate()
        return settings

    @staticmethod
    def _load_yaml(path: Path) -> dict:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    @classmethod
    def _deep_merge(cls, base: dict, overlay: dict) -> dict:
        merged = dict(base)
        for k, v in (overlay or {}).items():
            if isinstance(v, dict) and isinstance(base.get(k), dict):
                merged[k] = cls._deep_merge(base[k], v)
            else:
                merged[k] = v
        return merged

    @classmethod
    def env_overrides(cls, env: Optional[Mapping[str, str]] = None) -> dict:
        env = os.environ if env is None else env
        mapping: Dict[str, Tuple[Tuple[str, ...], Callable[[Any], Any]]] = {
            "IFS_STORY_PATH": (("story_path",), str),
            ENV_SAVE_DIR: (("save_dir",), str),
            "IFS_AUTOSAVE_SLOTS": (("autosave", "slots"), int),
            "IFS_AUTOSAVE_EVERY_TURNS": (("autosave", "every_turns"), _optional(int)),
            "IFS_AUTOSAVE_EVERY_SECONDS": (("autosave", "every_seconds"), _optional(float)),
            "IFS_HISTORY_CAPACITY": (("history", "capacity_bytes"), int),
        }
        out: Dict[str, Any] = {}
        for env_key, (keys, caster) in mapping.items():
            if env.get(env_key, "") == "":
                continue
            try:
                value = caster(env[env_key])
            except ValueError as exc:
                logger.error("Invalid env for %s=%r: %s", env_key, env[env_key], exc)
                continue
            target = out
            for k in keys[:-1]:
                target = target.setdefault(k, {})
            target[keys[-1]] = value
        return out

    @classmethod
    def load(cls, user_path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> "SessionSettings":
        """Load settings from defaults, an optional YAML file and the environment."""
        data = cls().to_dict()
        if user_path is not None:
            if user_path.exists():
                data = cls._deep_merge(data, cls._load_yaml(user_path))
                logger.info("Loaded user settings from %s", user_path)
            else:
                logger.warning("User settings file not found: %s", user_path)
        data = cls._deep_merge(data, cls.env_overrides(env))
        settings = cls.from_dict(data)
        logger.debug("Settings merged: %s", settings)
        return settings

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        logger.info("Saved settings to %s", path)
