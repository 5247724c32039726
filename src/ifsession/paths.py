from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from platformdirs import PlatformDirs

APP_NAME = "ifsession"

# Environment variable overrides (useful for tests and power users)
ENV_SAVE_DIR = "IFS_SAVE_DIR"
ENV_CONFIG_DIR = "IFS_CONFIG_DIR"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def _override(env_var: str, default: Path, env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    value = env.get(env_var)
    if value:
        return Path(value).expanduser().resolve()
    return Path(default).expanduser().resolve()


def default_save_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    """Directory holding named saves; autosaves live in its ``autosave`` subdirectory.

    Linux: ~/.local/share/ifsession/saves
    """
    return _override(ENV_SAVE_DIR, Path(_dirs().user_data_dir) / "saves", env)


def default_config_file(env: Optional[Mapping[str, str]] = None) -> Path:
    return _override(ENV_CONFIG_DIR, Path(_dirs().user_config_dir), env) / "settings.yaml"
