import pytest

import ifsession.autosave as autosave_mod
from ifsession import codec
from ifsession.engine import EngineState, capture_state
from ifsession.errors import InvalidOperation
from ifsession.metadata import StaticMetadataLookup, StoryMetadata
from ifsession.quetzal import read_snapshot
from ifsession.session import SessionController, SessionState

from conftest import FakeEngine


@pytest.fixture
def controller(engine, settings, story):
    c = SessionController(engine, settings)
    c.load(story)
    c.start()
    yield c
    c.close()


def _play(controller, engine, commands):
    states = {controller.turn: capture_state(engine)}
    for command in commands:
        result = controller.step(command)
        assert result.success
        states[result.turn] = capture_state(engine)
    return states


def test_lifecycle_states(engine, settings, story):
    c = SessionController(engine, settings)
    assert c.state is SessionState.IDLE
    with pytest.raises(InvalidOperation):
        c.step("look")
    c.load(story)
    assert c.state is SessionState.LOADED
    c.start()
    assert c.state is SessionState.RUNNING
    assert c.turn == 0
    c.close()
    assert c.state is SessionState.QUIT
    with pytest.raises(InvalidOperation):
        c.step("look")


def test_load_reads_configured_story_file(engine, settings, story_bytes, tmp_path):
    path = tmp_path / "story.z5"
    path.write_bytes(story_bytes)
    settings.story_path = path
    with SessionController(engine, settings) as c:
        c.load()
        assert c.story.checksum == 0xABCD


def test_load_without_story_is_invalid(engine, settings):
    with SessionController(engine, settings) as c:
        with pytest.raises(InvalidOperation):
            c.load()


def test_each_step_advances_turn(controller, engine):
    result = controller.step("look")
    assert result.success
    assert result.turn == 1
    assert controller.turn == 1
    assert len(controller.history) == 2


def test_undo_twice_then_redo(controller, engine, story):
    assert story.checksum == 0xABCD
    states = _play(controller, engine, ["north", "take lamp", "south", "open door", "west"])
    assert controller.turn == 5

    controller.undo()
    result = controller.undo()
    assert result.success
    assert result.turn == 3
    assert capture_state(engine) == states[3]

    result = controller.redo()
    assert result.turn == 4
    assert capture_state(engine) == states[4]
    assert controller.drain_notices() == ["[UNDO]", "[UNDO]", "[REDO]"]


def test_undo_at_start_reports_no_history(controller):
    result = controller.undo()
    assert not result.success
    assert result.code == "NO_HISTORY"
    assert result.message == SessionController.NOTICE_NOTHING_TO_UNDO
    assert controller.state is SessionState.RUNNING


def test_new_command_after_undo_drops_redo(controller, engine):
    _play(controller, engine, ["north", "south"])
    controller.undo()
    assert controller.step("east").turn == 2
    result = controller.redo()
    assert result.code == "NO_HISTORY"
    assert result.message == SessionController.NOTICE_NOTHING_TO_REDO


def test_undo_rolls_back_when_engine_rejects_state(controller, engine):
    _play(controller, engine, ["north", "south"])
    before = capture_state(engine)
    engine.reject_writes = 1
    result = controller.undo()
    assert not result.success
    assert result.code == "ENGINE_FAULT"
    assert capture_state(engine) == before
    assert controller.turn == 2
    assert controller.state is SessionState.RUNNING


def test_failed_rollback_leaves_session_loaded(controller, engine):
    _play(controller, engine, ["north"])
    engine.reject_writes = 2
    result = controller.undo()
    assert result.code == "ENGINE_FAULT"
    assert controller.state is SessionState.LOADED
    with pytest.raises(InvalidOperation):
        controller.step("look")


def test_save_and_restore(controller, engine):
    states = _play(controller, engine, ["north", "take lamp"])
    result = controller.save("lamp")
    assert result.success
    assert result.message == SessionController.NOTICE_SAVED
    _play(controller, engine, ["south", "drop lamp"])

    result = controller.restore("lamp")
    assert result.success
    assert result.turn == 2
    assert capture_state(engine) == states[2]
    assert controller.turn == 2
    assert len(controller.history) == 1
    assert controller.undo().code == "NO_HISTORY"
    assert [i.name for i in controller.list_saves()] == ["lamp"]


def test_restore_from_other_story_leaves_engine_untouched(controller, engine, other_story):
    _play(controller, engine, ["north"])
    foreign = codec.encode(EngineState(memory=bytes(64)), other_story, turn=3)
    controller.saves.save("foreign", foreign)
    before = capture_state(engine)

    result = controller.restore("foreign")

    assert not result.success
    assert result.code == "CHECKSUM_MISMATCH"
    assert result.message == SessionController.NOTICE_WRONG_STORY
    assert capture_state(engine) == before
    assert controller.turn == 1
    assert controller.state is SessionState.RUNNING


def test_restore_missing_and_corrupt_saves(controller, engine):
    result = controller.restore("ghost")
    assert result.code == "NOT_FOUND"
    controller.saves.path_for("bad").write_bytes(b"FORM junk")
    result = controller.restore("bad")
    assert result.code == "CORRUPT"
    assert controller.state is SessionState.RUNNING


def test_save_with_invalid_name(controller):
    result = controller.save("///")
    assert not result.success
    assert result.code == "INVALID"
    assert controller.state is SessionState.RUNNING


def test_unsupported_feature_is_a_notice(controller):
    result = controller.step("sound")
    assert result.success
    assert controller.drain_notices() == ["[Unsupported: sound effect 3]"]

    result = controller.step("beep")
    assert result.success
    assert controller.state is SessionState.RUNNING
    assert controller.drain_notices() == ["[Unsupported: sound effects]"]


def test_fatal_engine_error_ends_session(controller):
    controller.step("north")
    result = controller.step("crash")
    assert not result.success
    assert result.code == "ENGINE_FAULT"
    assert controller.state is SessionState.QUIT
    assert controller.quit_reason == "illegal opcode 0xEE"
    with pytest.raises(InvalidOperation):
        controller.step("look")


def test_raised_engine_fault_ends_session(controller):
    result = controller.step("explode")
    assert result.code == "ENGINE_FAULT"
    assert controller.state is SessionState.QUIT


def test_story_quit(controller):
    result = controller.step("quit")
    assert result.success
    assert result.code == "QUIT"
    assert controller.state is SessionState.QUIT


def test_continue_from_autosave(engine, settings, story):
    with SessionController(engine, settings) as first:
        first.load(story)
        first.start()
        states = _play(first, engine, ["north", "take lamp", "restart"])

    fresh = FakeEngine(story)
    with SessionController(fresh, settings) as second:
        second.load(story)
        result = second.restore_autosave()
        assert result.success
        assert result.turn == 3
        assert capture_state(fresh) == states[3]
        assert second.state is SessionState.RUNNING


def test_continue_without_autosave(engine, settings, story):
    with SessionController(engine, settings) as c:
        c.load(story)
        result = c.restore_autosave()
        assert result.code == "NOT_FOUND"
        assert c.state is SessionState.LOADED


def test_autosave_failure_is_reported(controller, monkeypatch):
    def broken_write(target, data):
        raise OSError("disk full")

    monkeypatch.setattr(autosave_mod, "write_temp_file", broken_write)
    assert controller.step("north").success
    controller.autosave.flush(timeout=5)
    assert SessionController.NOTICE_AUTOSAVE_FAILED in controller.drain_notices()


def test_display_title_uses_metadata(engine, settings, story):
    lookup = StaticMetadataLookup({story.ifid: StoryMetadata("Zork I", "Infocom")})
    with SessionController(engine, settings, metadata=lookup) as c:
        c.load(story)
        assert c.display_title == "Zork I by Infocom"


def test_display_title_falls_back_to_ifid(engine, settings, story):
    with SessionController(engine, settings) as c:
        c.load(story)
        assert c.display_title == "ZCODE-7-250101-ABCD"


def test_state_before_risky_command_reaches_disk(engine, settings, story):
    settings.autosave.every_turns = None
    settings.autosave.before_risky = True
    with SessionController(engine, settings) as c:
        c.load(story)
        c.start()
        states = _play(c, engine, ["look", "look", "look"])
        assert c.step("restart").turn == 4
        c.autosave.flush(timeout=5)
        on_disk = {}
        for path in c.autosave.slot_paths():
            if path.exists():
                snapshot = read_snapshot(path.read_bytes())
                on_disk[snapshot.turn] = codec.decode(snapshot, story)
    assert 3 in on_disk
    assert on_disk[3] == states[3]


def test_state_before_restore_reaches_disk(engine, settings, story):
    settings.autosave.every_turns = None
    with SessionController(engine, settings) as c:
        c.load(story)
        c.start()
        _play(c, engine, ["north"])
        c.save("start")
        _play(c, engine, ["south", "east"])
        assert c.restore("start").success
        turns = [read_snapshot(p.read_bytes()).turn for p in c.autosave.slot_paths() if p.exists()]
    assert turns == [3]
