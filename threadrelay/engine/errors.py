"""Exception hierarchy for the execution orchestration engine.

One exception per failure mode. Probes never raise these; they are
for calls that must fail loudly (spawn, session create, prompt send)
and for terminal execution errors surfaced through on_error.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all threadrelay errors."""


class NoPortAvailableError(RelayError):
    """Every port in the configured worker range is taken."""
    def __init__(self, port_min: int, port_max: int):
        self.port_min = port_min
        self.port_max = port_max
        super().__init__(
            f"No available ports in range {port_min}-{port_max}"
        )


class ReadinessTimeoutError(RelayError):
    """Worker did not answer its liveness endpoint before the deadline."""
    def __init__(self, port: int, timeout_seconds: float):
        self.port = port
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Worker at port {port} failed to become ready "
            f"within {timeout_seconds}s"
        )


class WorkerSpawnError(RelayError):
    """The worker process could not be started."""
    def __init__(self, project_path: str, reason: str):
        self.project_path = project_path
        self.reason = reason
        super().__init__(
            f"Failed to start worker for {project_path}: {reason}"
        )


class SessionCreateFailedError(RelayError):
    """Worker refused to create a session or returned no id."""
    def __init__(self, port: int, reason: str):
        self.port = port
        self.reason = reason
        super().__init__(f"Failed to create session on port {port}: {reason}")


class PromptSendFailedError(RelayError):
    """Worker rejected a prompt submission."""
    def __init__(self, session_id: str, status: int, reason: str = ""):
        self.session_id = session_id
        self.status = status
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Failed to send prompt to session {session_id} "
            f"(HTTP {status}){detail}"
        )


class TransportParseError(RelayError):
    """An event-stream payload could not be decoded."""
    def __init__(self, payload: str, reason: str):
        self.payload = payload
        self.reason = reason
        super().__init__(f"Failed to parse stream event: {reason}")


class TransportConnectionError(RelayError):
    """The event stream could not be opened or dropped mid-flight."""
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Event stream error for {url}: {reason}")


class ExecutionFailedError(RelayError):
    """Backend reported a non-success terminal result."""
    def __init__(self, subtype: str, message: str | None = None):
        self.subtype = subtype
        super().__init__(message or f"Query failed with subtype: {subtype}")
