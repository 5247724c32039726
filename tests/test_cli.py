import pytest

from ifsession import codec
from ifsession.cli import main, parse_args
from ifsession.engine import EngineState, Frame
from ifsession.quetzal import write_snapshot
from ifsession.saves import SaveStore


@pytest.fixture
def save_file(tmp_path, story):
    memory = bytearray(story.original_memory[: story.dynamic_size])
    memory[5] ^= 0x80
    state = EngineState(memory=bytes(memory), frames=(Frame(return_pc=0),), program_counter=0x4A0)
    path = tmp_path / "game.qzl"
    path.write_bytes(write_snapshot(codec.encode(state, story, turn=11, annotation="cellar")))
    return path


@pytest.fixture
def story_file(tmp_path, story_bytes):
    path = tmp_path / "story.z5"
    path.write_bytes(story_bytes)
    return path


def test_parse_args():
    args = parse_args(["--debug", "verify", "a.qzl", "--story", "s.z5"])
    assert args.debug
    assert args.cmd == "verify"
    assert args.story == "s.z5"


def test_info(save_file, capsys):
    assert main(["info", str(save_file)]) == 0
    out = capsys.readouterr().out
    assert "turn:      11" in out
    assert "checksum 0xABCD" in out
    assert "note:      cellar" in out
    assert "CMem" in out


def test_verify_ok(save_file, story_file, capsys):
    assert main(["verify", str(save_file), "--story", str(story_file)]) == 0
    assert "ok: turn 11" in capsys.readouterr().out


def test_verify_other_story(save_file, tmp_path, capsys):
    from conftest import build_story_bytes

    other = tmp_path / "other.z5"
    other.write_bytes(build_story_bytes(checksum=0x0001))
    assert main(["verify", str(save_file), "--story", str(other)]) == 1
    assert "mismatch" in capsys.readouterr().err


def test_verify_corrupt_save(tmp_path, story_file, capsys):
    bad = tmp_path / "bad.qzl"
    bad.write_bytes(b"FORM\x00\x00\x00\x04IFZX")
    assert main(["verify", str(bad), "--story", str(story_file)]) == 1
    assert "corrupt" in capsys.readouterr().err


def test_missing_file_is_an_error(tmp_path, capsys):
    assert main(["info", str(tmp_path / "missing.qzl")]) == 2
    assert "error:" in capsys.readouterr().err


def test_list(tmp_path, story, capsys):
    store = SaveStore(tmp_path / "saves")
    state = EngineState(memory=story.original_memory[: story.dynamic_size])
    store.save("kitchen", codec.encode(state, story, turn=3, annotation="kitchen"))
    assert main(["list", "--dir", str(tmp_path / "saves")]) == 0
    out = capsys.readouterr().out
    assert "kitchen" in out
    assert "turn 3" in out


def test_list_empty(tmp_path, capsys):
    assert main(["list", "--dir", str(tmp_path / "empty")]) == 0
    assert "No saves" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "usage" in capsys.readouterr().out
