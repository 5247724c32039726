import logging
import os
from typing import Mapping, Optional

ENV_LOG_LEVEL = "IFS_LOG_LEVEL"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def resolve_level(default_level: int = logging.INFO, env: Optional[Mapping[str, str]] = None) -> int:
    """Level named by IFS_LOG_LEVEL (e.g. ``debug``), or ``default_level`` if unset or unknown."""
    env = os.environ if env is None else env
    name = env.get(ENV_LOG_LEVEL, "").strip().upper()
    level = logging.getLevelName(name) if name else None
    return level if isinstance(level, int) else default_level


def configure_logging(default_level: int = logging.INFO, env: Optional[Mapping[str, str]] = None) -> int:
    """Set up root logging for the ``ifsession`` command line tool.

    Library modules only create loggers; handlers are installed here, once, by
    the entry point. Autosave warnings from the writer thread end up in the
    same stream as the session's own messages. Returns the level in effect.
    """
    level = resolve_level(default_level, env)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("ifsession").setLevel(level)
    return level
