"""Thread store accessors and JSON persistence."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from threadrelay.engine.models import (
    ChannelBinding,
    ProjectConfig,
    QueuedPrompt,
    QueueSettings,
    ThreadSession,
    WorktreeMapping,
)
from threadrelay.shared.services.durable_write import atomic_write_json, atomic_write_text
from threadrelay.shared.services.thread_store import ThreadStore


def test_channel_binding_resolves_project_path_and_model():
    store = ThreadStore()
    store.add_project(ProjectConfig(alias="api", path="/src/api", auto_worktree=True))
    store.set_channel_binding(ChannelBinding(channel_id="c1", project_alias="api", model="opus"))
    store.set_channel_binding(ChannelBinding(channel_id="c2", project_alias="missing"))

    assert store.get_channel_project_path("c1") == "/src/api"
    assert store.get_channel_model("c1") == "opus"
    assert store.get_project_auto_worktree("api") is True
    assert store.get_channel_project_path("c2") is None
    assert store.get_channel_project_path("c3") is None
    assert store.get_channel_model("c3") is None
    assert store.get_project_auto_worktree("missing") is False


def test_queue_settings_are_copies():
    store = ThreadStore()
    settings = store.get_queue_settings("t1")
    settings.paused = True

    assert store.get_queue_settings("t1").paused is False

    store.set_queue_settings("t1", QueueSettings(continue_on_failure=True))
    assert store.get_queue_settings("t1").continue_on_failure is True


def test_queue_is_fifo_and_get_queue_is_a_copy():
    store = ThreadStore()
    assert store.add_to_queue("t1", QueuedPrompt("a", "u1")) == 1
    assert store.add_to_queue("t1", QueuedPrompt("b", "u1")) == 2

    snapshot = store.get_queue("t1")
    snapshot.clear()
    assert len(store.get_queue("t1")) == 2

    assert store.pop_from_queue("t1").prompt == "a"
    assert store.pop_from_queue("t1").prompt == "b"
    assert store.pop_from_queue("t1") is None


def test_persists_and_reloads_everything(tmp_path):
    path = tmp_path / "state" / "store.json"
    store = ThreadStore(path)
    created = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    store.add_project(ProjectConfig(alias="api", path="/src/api"))
    store.set_channel_binding(ChannelBinding(channel_id="c1", project_alias="api"))
    store.set_thread_session(ThreadSession(
        thread_id="t1", session_id="ses_1", project_path="/src/api", port=14097,
        created_at=created, last_used_at=created,
    ))
    store.set_thread_channel("t1", "c1")
    store.set_worktree_mapping(WorktreeMapping(
        thread_id="t1", branch_name="auto/t1-1", worktree_path="/wt/t1",
        project_path="/src/api",
    ))
    store.add_to_queue("t1", QueuedPrompt("later", "u1"))
    store.set_queue_settings("t1", QueueSettings(paused=True))

    assert path.exists()
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["thread_sessions"][0]["created_at"] == created.isoformat()

    reloaded = ThreadStore.load(path)
    session = reloaded.get_thread_session("t1")
    assert session.session_id == "ses_1"
    assert session.port == 14097
    assert session.created_at == created
    assert reloaded.get_channel_project_path("c1") == "/src/api"
    assert reloaded.get_thread_channel("t1") == "c1"
    assert reloaded.get_worktree_mapping("t1").worktree_path == "/wt/t1"
    assert [q.prompt for q in reloaded.get_queue("t1")] == ["later"]
    assert reloaded.get_queue_settings("t1").paused is True


def test_clearing_session_and_mapping(tmp_path):
    store = ThreadStore(tmp_path / "store.json")
    store.set_thread_session(ThreadSession("t1", "ses_1", "/src/api"))
    store.set_worktree_mapping(WorktreeMapping("t1", "b", "/wt", "/src/api"))

    before = store.get_thread_session("t1").last_used_at
    store.update_thread_session_last_used("t1")
    assert store.get_thread_session("t1").last_used_at >= before
    store.update_thread_session_last_used("unknown")

    store.clear_thread_session("t1")
    store.remove_worktree_mapping("t1")

    reloaded = ThreadStore.load(tmp_path / "store.json")
    assert reloaded.get_thread_session("t1") is None
    assert reloaded.get_worktree_mapping("t1") is None


def test_load_missing_or_corrupt_file_starts_empty(tmp_path):
    assert ThreadStore.load(tmp_path / "absent.json").get_queue("t1") == []

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{ nope", encoding="utf-8")
    store = ThreadStore.load(corrupt)
    assert store.get_channel_binding("c1") is None

    # The corrupt file is replaced on the next write
    store.set_thread_channel("t1", "c1")
    assert json.loads(corrupt.read_text(encoding="utf-8"))["thread_channels"] == {"t1": "c1"}


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "out.txt"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")
    atomic_write_json(tmp_path / "data.json", {"b": 1, "a": 2})

    assert target.read_text(encoding="utf-8") == "two"
    assert list(target.parent.iterdir()) == [target]
    assert json.loads((tmp_path / "data.json").read_text(encoding="utf-8")) == {"a": 2, "b": 1}
