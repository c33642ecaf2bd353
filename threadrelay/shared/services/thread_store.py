"""Thread store: the key-value state the dispatcher reads and writes.

Holds project definitions, channel bindings, thread sessions, worktree
mappings, per-thread prompt queues and queue settings. Everything lives
in memory; when constructed with a path the whole store is rewritten
atomically as JSON after every mutation so a restart picks up where the
previous process left off.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from threadrelay.engine.models import (
    ChannelBinding,
    ProjectConfig,
    QueuedPrompt,
    QueueSettings,
    ThreadSession,
    WorktreeMapping,
)
from threadrelay.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = {"created_at", "last_used_at", "timestamp"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode(record: Any) -> dict[str, Any]:
    data = asdict(record)
    for key in _DATETIME_FIELDS & data.keys():
        data[key] = data[key].isoformat()
    return data


def _decode(cls: type, data: dict[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    for key in _DATETIME_FIELDS & kwargs.keys():
        kwargs[key] = datetime.fromisoformat(kwargs[key])
    return cls(**kwargs)


class ThreadStore:
    """In-memory store with optional JSON persistence."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._projects: dict[str, ProjectConfig] = {}
        self._bindings: dict[str, ChannelBinding] = {}
        self._sessions: dict[str, ThreadSession] = {}
        self._thread_channels: dict[str, str] = {}
        self._worktrees: dict[str, WorktreeMapping] = {}
        self._queues: dict[str, list[QueuedPrompt]] = {}
        self._queue_settings: dict[str, QueueSettings] = {}

    # ── Persistence ──────────────────────────────────────────

    @classmethod
    def load(cls, path: Path | str) -> ThreadStore:
        """Load a store from disk, starting empty if missing or corrupt."""
        store = cls(path)
        target = Path(path)
        if not target.exists():
            logger.debug("Thread store not found at %s; starting empty", target)
            return store
        try:
            raw = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning(
                "Failed to load thread store from %s; starting empty",
                target, exc_info=True,
            )
            return store

        for item in raw.get("projects", []):
            project = _decode(ProjectConfig, item)
            store._projects[project.alias] = project
        for item in raw.get("bindings", []):
            binding = _decode(ChannelBinding, item)
            store._bindings[binding.channel_id] = binding
        for item in raw.get("thread_sessions", []):
            session = _decode(ThreadSession, item)
            store._sessions[session.thread_id] = session
        for item in raw.get("worktree_mappings", []):
            mapping = _decode(WorktreeMapping, item)
            store._worktrees[mapping.thread_id] = mapping
        store._thread_channels = dict(raw.get("thread_channels", {}))
        for thread_id, items in raw.get("queues", {}).items():
            store._queues[thread_id] = [_decode(QueuedPrompt, i) for i in items]
        for thread_id, item in raw.get("queue_settings", {}).items():
            store._queue_settings[thread_id] = _decode(QueueSettings, item)
        logger.info(
            "Loaded thread store from %s (%d projects, %d sessions, %d queues)",
            target, len(store._projects), len(store._sessions),
            len(store._queues),
        )
        return store

    def save(self) -> None:
        if self._path is None:
            return
        payload = {
            "projects": [_encode(p) for p in self._projects.values()],
            "bindings": [_encode(b) for b in self._bindings.values()],
            "thread_sessions": [_encode(s) for s in self._sessions.values()],
            "thread_channels": dict(self._thread_channels),
            "worktree_mappings": [_encode(w) for w in self._worktrees.values()],
            "queues": {
                thread_id: [_encode(q) for q in items]
                for thread_id, items in self._queues.items()
                if items
            },
            "queue_settings": {
                thread_id: _encode(s)
                for thread_id, s in self._queue_settings.items()
            },
        }
        atomic_write_json(self._path, payload)

    # ── Projects and channel bindings ────────────────────────

    def add_project(self, project: ProjectConfig) -> None:
        self._projects[project.alias] = project
        self.save()

    def get_project(self, alias: str) -> ProjectConfig | None:
        return self._projects.get(alias)

    def get_project_auto_worktree(self, alias: str) -> bool:
        project = self._projects.get(alias)
        return bool(project and project.auto_worktree)

    def set_channel_binding(self, binding: ChannelBinding) -> None:
        self._bindings[binding.channel_id] = binding
        self.save()

    def get_channel_binding(self, channel_id: str) -> ChannelBinding | None:
        return self._bindings.get(channel_id)

    def get_channel_project_path(self, channel_id: str) -> str | None:
        binding = self._bindings.get(channel_id)
        if binding is None:
            return None
        project = self._projects.get(binding.project_alias)
        return project.path if project else None

    def get_channel_model(self, channel_id: str) -> str | None:
        binding = self._bindings.get(channel_id)
        return binding.model if binding else None

    # ── Thread sessions ──────────────────────────────────────

    def get_thread_session(self, thread_id: str) -> ThreadSession | None:
        return self._sessions.get(thread_id)

    def set_thread_session(self, session: ThreadSession) -> None:
        self._sessions[session.thread_id] = session
        self.save()

    def update_thread_session_last_used(self, thread_id: str) -> None:
        session = self._sessions.get(thread_id)
        if session is None:
            return
        session.last_used_at = _utcnow()
        self.save()

    def clear_thread_session(self, thread_id: str) -> None:
        if self._sessions.pop(thread_id, None) is not None:
            self.save()

    def set_thread_channel(self, thread_id: str, channel_id: str) -> None:
        if self._thread_channels.get(thread_id) == channel_id:
            return
        self._thread_channels[thread_id] = channel_id
        self.save()

    def get_thread_channel(self, thread_id: str) -> str | None:
        return self._thread_channels.get(thread_id)

    # ── Worktree mappings ────────────────────────────────────

    def get_worktree_mapping(self, thread_id: str) -> WorktreeMapping | None:
        return self._worktrees.get(thread_id)

    def set_worktree_mapping(self, mapping: WorktreeMapping) -> None:
        self._worktrees[mapping.thread_id] = mapping
        self.save()

    def remove_worktree_mapping(self, thread_id: str) -> None:
        if self._worktrees.pop(thread_id, None) is not None:
            self.save()

    # ── Queues ───────────────────────────────────────────────

    def add_to_queue(self, thread_id: str, item: QueuedPrompt) -> int:
        """Append to the thread's queue; returns the new queue length."""
        queue = self._queues.setdefault(thread_id, [])
        queue.append(item)
        self.save()
        return len(queue)

    def pop_from_queue(self, thread_id: str) -> QueuedPrompt | None:
        queue = self._queues.get(thread_id)
        if not queue:
            return None
        item = queue.pop(0)
        self.save()
        return item

    def get_queue(self, thread_id: str) -> list[QueuedPrompt]:
        return list(self._queues.get(thread_id, []))

    def clear_queue(self, thread_id: str) -> None:
        if self._queues.pop(thread_id, None):
            self.save()

    def get_queue_settings(self, thread_id: str) -> QueueSettings:
        settings = self._queue_settings.get(thread_id)
        return QueueSettings(**asdict(settings)) if settings else QueueSettings()

    def set_queue_settings(self, thread_id: str, settings: QueueSettings) -> None:
        self._queue_settings[thread_id] = settings
        self.save()
