from pathlib import Path

import pytest
import yaml

from ifsession.autosave import AutosavePolicy
from ifsession.paths import default_config_file, default_save_dir
from ifsession.settings import DEFAULT_HISTORY_CAPACITY, SessionSettings


def test_defaults(tmp_path):
    s = SessionSettings.load(env={"IFS_SAVE_DIR": str(tmp_path)})
    assert s.story_path is None
    assert s.save_dir == tmp_path
    assert s.autosave_dir == tmp_path / "autosave"
    assert s.autosave.slots == 3
    assert s.autosave.policy() == AutosavePolicy(every_turns=1, every_seconds=None, before_risky=True)
    assert s.history.capacity_bytes == DEFAULT_HISTORY_CAPACITY


def test_yaml_file_overrides_defaults(tmp_path):
    cfg = tmp_path / "settings.yaml"
    cfg.write_text(
        yaml.safe_dump(
            {
                "story_path": str(tmp_path / "zork.z5"),
                "save_dir": str(tmp_path / "s"),
                "autosave": {"slots": 5, "every_turns": None, "every_seconds": 45, "risky_commands": ["RESTART"]},
                "history": {"capacity_bytes": 2048},
            }
        ),
        encoding="utf-8",
    )
    s = SessionSettings.load(cfg, env={})
    assert s.story_path == tmp_path / "zork.z5"
    assert s.save_dir == tmp_path / "s"
    assert s.autosave.slots == 5
    assert s.autosave.every_turns is None
    assert s.autosave.every_seconds == 45.0
    assert s.autosave.risky_commands == ["restart"]
    # Values not in the file keep their defaults
    assert s.autosave.before_risky is True
    assert s.history.capacity_bytes == 2048


def test_env_overrides_file(tmp_path):
    cfg = tmp_path / "settings.yaml"
    cfg.write_text("autosave:\n  slots: 5\n", encoding="utf-8")
    env = {
        "IFS_SAVE_DIR": str(tmp_path / "env-saves"),
        "IFS_AUTOSAVE_SLOTS": "2",
        "IFS_AUTOSAVE_EVERY_TURNS": "off",
        "IFS_AUTOSAVE_EVERY_SECONDS": "12.5",
        "IFS_HISTORY_CAPACITY": "4096",
    }
    s = SessionSettings.load(cfg, env=env)
    assert s.save_dir == tmp_path / "env-saves"
    assert s.autosave.slots == 2
    assert s.autosave.every_turns is None
    assert s.autosave.every_seconds == 12.5
    assert s.history.capacity_bytes == 4096


def test_invalid_env_value_is_ignored(tmp_path, caplog):
    s = SessionSettings.load(env={"IFS_SAVE_DIR": str(tmp_path), "IFS_AUTOSAVE_SLOTS": "many"})
    assert s.autosave.slots == 3
    assert "IFS_AUTOSAVE_SLOTS" in caplog.text


def test_missing_user_file_is_not_fatal(tmp_path):
    s = SessionSettings.load(tmp_path / "nope.yaml", env={"IFS_SAVE_DIR": str(tmp_path)})
    assert s.autosave.slots == 3


@pytest.mark.parametrize(
    "data",
    [
        {"autosave": {"slots": 0}},
        {"autosave": {"every_turns": 0}},
        {"autosave": {"every_seconds": -1}},
        {"history": {"capacity_bytes": 0}},
    ],
)
def test_invalid_values_are_rejected(tmp_path, data):
    with pytest.raises(ValueError):
        SessionSettings.from_dict({"save_dir": str(tmp_path), **data})


def test_save_and_reload(tmp_path):
    s = SessionSettings.from_dict({"save_dir": str(tmp_path / "s"), "autosave": {"slots": 4}})
    path = tmp_path / "cfg" / "settings.yaml"
    s.save(path)
    again = SessionSettings.load(path, env={})
    assert again.to_dict() == s.to_dict()


def test_default_paths_honor_env(tmp_path):
    env = {"IFS_SAVE_DIR": str(tmp_path / "a"), "IFS_CONFIG_DIR": str(tmp_path / "b")}
    assert default_save_dir(env) == (tmp_path / "a").resolve()
    assert default_config_file(env) == (tmp_path / "b").resolve() / "settings.yaml"
    assert isinstance(default_save_dir({}), Path)
