"""Core data models for the orchestration engine.

All dataclasses and enums live here so the registries, the execution
styles and the dispatcher can share them without circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackendKind(str, Enum):
    """Which execution style runs prompts."""
    SDK = "sdk"
    REMOTE = "remote"


@dataclass
class WorkerInstance:
    """A spawned per-project worker server.

    ``generation`` increases with every spawn so an exit watcher for an
    old process can tell that the project has since been respawned.
    """
    project_path: str
    port: int
    process: Any
    start_time: datetime = field(default_factory=_utcnow)
    generation: int = 0


@dataclass
class ThreadSession:
    """Conversation continuity bound to a chat thread."""
    thread_id: str
    session_id: str
    project_path: str
    port: int = 0  # 0 for in-process SDK sessions
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)


@dataclass
class QueuedPrompt:
    prompt: str
    requester_id: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class QueueSettings:
    paused: bool = False
    continue_on_failure: bool = False
    fresh_context: bool = False


@dataclass
class ExecutionOptions:
    """Per-invocation knobs shared by both execution styles."""
    resume_session_id: str | None = None
    model: str | None = None


@dataclass
class ExecutionResult:
    """Terminal success payload reported through on_complete."""
    text: str
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None


@dataclass
class TextPart:
    """A text part update decoded from the worker event stream.

    ``text`` is the full current text of the part, not a delta.
    """
    id: str | None
    session_id: str | None
    message_id: str | None
    text: str


@dataclass
class ProjectConfig:
    alias: str
    path: str
    auto_worktree: bool = False


@dataclass
class ChannelBinding:
    channel_id: str
    project_alias: str
    model: str | None = None


@dataclass
class WorktreeMapping:
    thread_id: str
    branch_name: str
    worktree_path: str
    project_path: str
    description: str = ""
    created_at: datetime = field(default_factory=_utcnow)
