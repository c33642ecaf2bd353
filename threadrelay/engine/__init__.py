"""Execution orchestration engine: workers, sessions, executions, queues."""
from .models import (
    BackendKind,
    ChannelBinding,
    ExecutionOptions,
    ExecutionResult,
    ProjectConfig,
    QueuedPrompt,
    QueueSettings,
    TextPart,
    ThreadSession,
    WorkerInstance,
    WorktreeMapping,
)
from .config import RelayConfig
from .errors import (
    ExecutionFailedError,
    NoPortAvailableError,
    PromptSendFailedError,
    ReadinessTimeoutError,
    RelayError,
    SessionCreateFailedError,
    TransportConnectionError,
    TransportParseError,
    WorkerSpawnError,
)

__all__ = [
    # Dispatcher (lazy import)
    "Dispatcher",
    "ProgressRenderer",
    # Models
    "BackendKind",
    "ChannelBinding",
    "ExecutionOptions",
    "ExecutionResult",
    "ProjectConfig",
    "QueuedPrompt",
    "QueueSettings",
    "TextPart",
    "ThreadSession",
    "WorkerInstance",
    "WorktreeMapping",
    # Config
    "RelayConfig",
    # YAML config (lazy import)
    "RelayFileConfig",
    "load_yaml_config",
    # Registries and executions (lazy import)
    "WorkerRegistry",
    "SessionRegistry",
    "EventStreamClient",
    "PromptQueue",
    "ActiveExecutions",
    "RemoteExecution",
    "SdkExecution",
    "build_execution_factory",
    # Errors
    "ExecutionFailedError",
    "NoPortAvailableError",
    "PromptSendFailedError",
    "ReadinessTimeoutError",
    "RelayError",
    "SessionCreateFailedError",
    "TransportConnectionError",
    "TransportParseError",
    "WorkerSpawnError",
]


def __getattr__(name: str):
    if name in ("Dispatcher", "ProgressRenderer"):
        from . import dispatcher
        return getattr(dispatcher, name)
    if name in ("RelayFileConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    if name == "WorkerRegistry":
        from .worker_registry import WorkerRegistry
        return WorkerRegistry
    if name == "SessionRegistry":
        from .session_registry import SessionRegistry
        return SessionRegistry
    if name == "EventStreamClient":
        from .event_stream import EventStreamClient
        return EventStreamClient
    if name == "PromptQueue":
        from .prompt_queue import PromptQueue
        return PromptQueue
    if name in ("ActiveExecutions", "RemoteExecution", "SdkExecution", "build_execution_factory"):
        from . import execution
        return getattr(execution, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
