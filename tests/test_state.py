"""Tests for loop state persistence."""
import json

from ralph_wiggum.state import STATE_DIR_NAME, STATE_FILE_NAME, LoopState, LoopStateStore


def test_save_writes_camel_case_json(tmp_path):
    store = LoopStateStore(tmp_path)
    store.save(LoopState(prompt="Build it", max_iterations=5, model="m/x", started_at="2024-01-01T00:00:00.000Z"))

    assert store.path == tmp_path / STATE_DIR_NAME / STATE_FILE_NAME
    data = json.loads(store.path.read_text())
    assert data == {
        "active": True,
        "iteration": 1,
        "maxIterations": 5,
        "completionPromise": "COMPLETE",
        "prompt": "Build it",
        "startedAt": "2024-01-01T00:00:00.000Z",
        "model": "m/x",
    }


def test_load_returns_saved_state(tmp_path):
    store = LoopStateStore(tmp_path)
    state = LoopState(prompt="Task", completion_promise="DONE", iteration=4)
    store.save(state)

    assert store.load() == state


def test_started_at_is_utc_iso8601():
    started_at = LoopState(prompt="x").started_at
    assert started_at.endswith("Z")
    assert "T" in started_at


def test_load_missing_file(tmp_path):
    assert LoopStateStore(tmp_path).load() is None


def test_load_unreadable_contents(tmp_path):
    store = LoopStateStore(tmp_path)
    store.state_dir.mkdir()

    store.path.write_text("{not json")
    assert store.load() is None

    store.path.write_text("[1, 2]")
    assert store.load() is None

    store.path.write_text('{"unexpected": true}')
    assert store.load().active is False


def test_load_fills_missing_keys_with_defaults(tmp_path):
    store = LoopStateStore(tmp_path)
    store.state_dir.mkdir()
    store.path.write_text('{"active": true, "iteration": 3}')

    state = store.load()
    assert state.active is True
    assert state.iteration == 3
    assert state.completion_promise == "COMPLETE"


def test_clear_removes_file_and_tolerates_absence(tmp_path):
    store = LoopStateStore(tmp_path)
    store.save(LoopState(prompt="x"))

    store.clear()
    assert not store.path.exists()
    store.clear()


def test_max_iterations_reached():
    assert not LoopState(prompt="x", max_iterations=0, iteration=1000).max_iterations_reached()
    assert not LoopState(prompt="x", max_iterations=3, iteration=3).max_iterations_reached()
    assert LoopState(prompt="x", max_iterations=3, iteration=4).max_iterations_reached()
