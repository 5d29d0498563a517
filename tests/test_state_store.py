"""Tests for the JSON state store."""

import json

from infra.state_store import DEFAULT_STATE, MAX_EVENTS, StateStore


def test_load_defaults_when_missing(tmp_path):
    store = StateStore(str(tmp_path / "nested" / "state.json"))
    assert store.load() == DEFAULT_STATE
    assert (tmp_path / "nested").is_dir()


def test_set_section_persists_atomically(tmp_path):
    path = tmp_path / "state.json"
    store = StateStore(str(path))
    store.set_section("admission", {"daily_count": 2, "last_rebalance_at": None, "daily_window_start": None})

    on_disk = json.loads(path.read_text())
    assert on_disk["admission"]["daily_count"] == 2
    assert not list(tmp_path.glob(".state_*.tmp"))


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    assert StateStore(str(path)).load() == DEFAULT_STATE


def test_get_returns_default_for_unset(tmp_path):
    store = StateStore(str(tmp_path / "state.json"))
    assert store.get("automation_config") is None
    assert store.get("automation_config", {}) == {}


def test_events_are_bounded(tmp_path):
    store = StateStore(str(tmp_path / "state.json"))
    for i in range(MAX_EVENTS + 5):
        store.record_event("config_update", n=i)

    events = store.load()["events"]
    assert len(events) == MAX_EVENTS
    assert events[-1]["n"] == MAX_EVENTS + 4


def test_reset(tmp_path):
    store = StateStore(str(tmp_path / "state.json"))
    store.set_section("automation_config", {"enabled": True})
    store.reset()
    assert store.load() == DEFAULT_STATE


def test_state_file_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("STATE_FILE", str(tmp_path / "env_state.json"))
    store = StateStore()
    assert store.state_file == tmp_path / "env_state.json"
