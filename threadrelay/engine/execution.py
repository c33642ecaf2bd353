"""Drives one prompt through a backend until it reaches a terminal state.

Two execution styles share one lifecycle contract:

    RemoteExecution   spawned worker server per project, HTTP session
                      calls, progress over the worker's event stream
    SdkExecution      in-process Claude Agent SDK client

Both expose ``accumulated_text`` (sampled by the caller for progress
display), ``session_id`` and ``completed``, and report exclusively
through ExecutionCallbacks:

    on_session_init(session_id)   session established or resumed
    on_complete(ExecutionResult)  terminal success
    on_error(exception)           terminal failure

At most one terminal callback fires per execution. The style is chosen
once, in build_execution_factory(); nothing else branches on it.
"""
from __future__ import annotations

import abc
import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import RelayConfig
from .errors import ExecutionFailedError
from .event_stream import EventStreamClient
from .models import BackendKind, ExecutionOptions, ExecutionResult, TextPart

logger = logging.getLogger(__name__)

NO_OUTPUT = "No output received."


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a lifecycle callback (sync or async), logging its failures."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Execution callback %r failed", callback)


@dataclass
class ExecutionCallbacks:
    on_session_init: Callable[[str], Any] | None = None
    on_complete: Callable[[ExecutionResult], Any] | None = None
    on_error: Callable[[Exception], Any] | None = None


class Execution(abc.ABC):
    """One in-flight prompt. Also the per-thread busy marker."""

    def __init__(self) -> None:
        self.accumulated_text: str = ""
        self.session_id: str | None = None
        self.completed: bool = False
        self.port: int = 0
        self._callbacks = ExecutionCallbacks()
        self._terminal = False

    @abc.abstractmethod
    async def start(
        self,
        cwd: str,
        prompt: str,
        options: ExecutionOptions,
        callbacks: ExecutionCallbacks,
    ) -> None:
        """Begin the execution and return once it is in flight.

        Progress and the terminal outcome arrive through callbacks.
        """

    @abc.abstractmethod
    async def interrupt(self) -> bool:
        """Best-effort cancellation. Never raises."""

    async def _set_session(self, session_id: str) -> None:
        self.session_id = session_id
        await _notify(self._callbacks.on_session_init, session_id)

    async def _finish(self, result: ExecutionResult) -> None:
        if self._terminal:
            return
        self._terminal = True
        self.completed = True
        await _notify(self._callbacks.on_complete, result)

    async def _fail(self, error: Exception) -> None:
        if self._terminal:
            return
        self._terminal = True
        self.completed = True
        await _notify(self._callbacks.on_error, error)


# ── Remote worker style ──────────────────────────────────────


class RemoteExecution(Execution):
    """Runs a prompt on the project's worker server.

    start() performs all setup inline and raises on failure (port
    exhaustion, readiness timeout, session or prompt errors), unless
    the event stream has already failed the execution. Once the
    prompt is submitted the event stream drives the rest: part updates
    replace the buffer and session.idle is the terminal success signal.
    """

    def __init__(
        self,
        workers: Any,
        sessions: Any,
        *,
        ready_timeout: float = 10.0,
        stream_factory: Callable[[], EventStreamClient] = EventStreamClient,
    ) -> None:
        super().__init__()
        self._workers = workers
        self._sessions = sessions
        self._ready_timeout = ready_timeout
        self._stream_factory = stream_factory
        self._stream: EventStreamClient | None = None

    async def start(
        self,
        cwd: str,
        prompt: str,
        options: ExecutionOptions,
        callbacks: ExecutionCallbacks,
    ) -> None:
        self._callbacks = callbacks
        try:
            self.port = await self._workers.spawn_worker(cwd)
            await self._workers.wait_for_ready(self.port, self._ready_timeout)
            session_id, _reused = await self._sessions.resolve_session(
                self.port, options.resume_session_id,
            )
            await self._set_session(session_id)

            stream = self._stream_factory()
            stream.on_part_updated(self._on_part_updated)
            stream.on_session_idle(self._on_session_idle)
            stream.on_error(self._on_stream_error)
            self._stream = stream
            await stream.connect(self._workers.base_url(self.port))

            await self._sessions.send_prompt(self.port, session_id, prompt)
        except BaseException as exc:
            already_terminal = self._terminal
            self.completed = True
            self._terminal = True
            await self._close_stream()
            if already_terminal and isinstance(exc, Exception):
                # The stream already reported a terminal failure
                logger.info(
                    "Remote execution session=%s setup error after terminal state: %s",
                    self.session_id, exc,
                )
                return
            raise
        logger.info(
            "Remote execution started session=%s port=%d cwd=%s",
            self.session_id, self.port, cwd,
        )

    def _on_part_updated(self, part: TextPart) -> None:
        if part.session_id and part.session_id != self.session_id:
            return
        self.accumulated_text = part.text

    async def _on_session_idle(self, session_id: str) -> None:
        if session_id != self.session_id or self._terminal:
            return
        await self._close_stream()
        await self._finish(ExecutionResult(text=self.accumulated_text or NO_OUTPUT))

    async def _on_stream_error(self, error: Exception) -> None:
        if self._terminal:
            return
        logger.warning("Remote execution session=%s stream error: %s", self.session_id, error)
        await self._close_stream()
        await self._fail(error)

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.disconnect()

    async def interrupt(self) -> bool:
        if self.completed or not self.session_id or not self.port:
            return False
        try:
            return await self._sessions.abort_session(self.port, self.session_id)
        except Exception:
            logger.warning("Interrupt of session %s failed", self.session_id, exc_info=True)
            return False


# ── In-process SDK style ─────────────────────────────────────


def default_sdk_client_factory(
    cwd: str,
    model: str | None,
    resume: str | None,
    permission_mode: str,
) -> Any:
    """Build a ClaudeSDKClient with token-level streaming enabled."""
    # Import SDK lazily so the remote style works without the CLI present
    from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient

    options_kwargs: dict[str, Any] = dict(
        cwd=cwd,
        permission_mode=permission_mode,
        include_partial_messages=True,
    )
    if model:
        options_kwargs["model"] = model
    if resume:
        options_kwargs["resume"] = resume
    return ClaudeSDKClient(options=ClaudeAgentOptions(**options_kwargs))


# factory(cwd, model, resume_session_id, permission_mode) -> SDK client
SdkClientFactory = Callable[..., Any]


class SdkExecution(Execution):
    """Runs a prompt through an in-process Claude Agent SDK client.

    start() returns as soon as the background task is scheduled; the
    task owns every failure and reports it through on_error.
    """

    def __init__(
        self,
        *,
        permission_mode: str = "bypassPermissions",
        client_factory: SdkClientFactory = default_sdk_client_factory,
    ) -> None:
        super().__init__()
        self._permission_mode = permission_mode
        self._client_factory = client_factory
        self._client: Any = None
        self._task: asyncio.Task | None = None

    async def start(
        self,
        cwd: str,
        prompt: str,
        options: ExecutionOptions,
        callbacks: ExecutionCallbacks,
    ) -> None:
        self._callbacks = callbacks
        logger.info(
            "SDK execution starting cwd=%s model=%s resume=%s",
            cwd, options.model or "<default>", options.resume_session_id,
        )
        self._task = asyncio.create_task(
            self._run(cwd, prompt, options), name=f"sdk-execution:{cwd}",
        )

    async def wait(self) -> None:
        """Await the background task without cancelling it."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self, cwd: str, prompt: str, options: ExecutionOptions) -> None:
        try:
            self._client = self._client_factory(
                cwd, options.model, options.resume_session_id, self._permission_mode,
            )
            await self._client.connect()
            await self._client.query(prompt)
            async for message in self._client.receive_response():
                if await self._handle_message(message):
                    return
            # Stream ended without a result message
            await self._finish(ExecutionResult(text=self.accumulated_text or NO_OUTPUT))
        except asyncio.CancelledError:
            await self._fail(ExecutionFailedError("cancelled", "Execution was cancelled"))
            raise
        except Exception as exc:
            logger.exception("SDK execution session=%s failed", self.session_id)
            await self._fail(exc)
        finally:
            self.completed = True
            await self._disconnect()

    async def _handle_message(self, message: Any) -> bool:
        """Apply one SDK message. Returns True once terminal."""
        if hasattr(message, "event"):
            self._apply_stream_event(getattr(message, "event", None))
        elif hasattr(message, "result") or hasattr(message, "total_cost_usd"):
            await self._apply_result(message)
            return True
        elif getattr(message, "subtype", None) == "init":
            data = getattr(message, "data", None) or {}
            session_id = data.get("session_id") or getattr(message, "session_id", None)
            if session_id:
                await self._set_session(session_id)
        elif hasattr(message, "content") and hasattr(message, "model"):
            self._apply_assistant_turn(message.content)
        return False

    def _apply_stream_event(self, event: Any) -> None:
        if not isinstance(event, dict):
            return
        if event.get("type") != "content_block_delta":
            return
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta":
            self.accumulated_text += delta.get("text", "")

    def _apply_assistant_turn(self, content: Any) -> None:
        # The full turn is authoritative; deltas should already match it
        if not isinstance(content, list):
            return
        texts = [
            block.text for block in content
            if hasattr(block, "text") and isinstance(block.text, str)
        ]
        if not texts:
            return
        turn_text = "\n".join(texts)
        if not self.accumulated_text.endswith(turn_text):
            self.accumulated_text = turn_text

    async def _apply_result(self, message: Any) -> None:
        subtype = getattr(message, "subtype", None)
        result_text = getattr(message, "result", None)
        if getattr(message, "session_id", None) and not self.session_id:
            self.session_id = message.session_id
        if subtype == "success":
            await self._finish(ExecutionResult(
                text=result_text or self.accumulated_text or NO_OUTPUT,
                cost_usd=getattr(message, "total_cost_usd", None),
                duration_ms=getattr(message, "duration_ms", None),
                num_turns=getattr(message, "num_turns", None),
            ))
        else:
            await self._fail(ExecutionFailedError(str(subtype), result_text or None))

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception:
            logger.debug("SDK client disconnect failed", exc_info=True)

    async def interrupt(self) -> bool:
        if self._client is None or self.completed:
            return False
        try:
            await self._client.interrupt()
        except Exception:
            logger.warning("SDK interrupt failed for session %s", self.session_id, exc_info=True)
            return False
        logger.info("SDK interrupt sent for session %s", self.session_id)
        return True


# ── Active execution table ───────────────────────────────────


class ActiveExecutions:
    """Thread-keyed table of in-flight executions; the busy predicate."""

    def __init__(self) -> None:
        self._active: dict[str, Execution] = {}

    def set(self, thread_id: str, execution: Execution) -> None:
        current = self._active.get(thread_id)
        if current is not None and current is not execution and not current.completed:
            raise RuntimeError(f"Thread {thread_id} already has an active execution")
        self._active[thread_id] = execution

    def get(self, thread_id: str) -> Execution | None:
        return self._active.get(thread_id)

    def clear(self, thread_id: str, execution: Execution | None = None) -> None:
        """Deregister; with execution given, only if it is still the active one."""
        if execution is not None and self._active.get(thread_id) is not execution:
            return
        self._active.pop(thread_id, None)

    def is_busy(self, thread_id: str) -> bool:
        execution = self._active.get(thread_id)
        return execution is not None and not execution.completed

    def threads(self) -> list[str]:
        return list(self._active)

    async def interrupt(self, thread_id: str) -> bool:
        execution = self._active.get(thread_id)
        if execution is None:
            return False
        return await execution.interrupt()


def build_execution_factory(
    config: RelayConfig,
    workers: Any = None,
    sessions: Any = None,
) -> Callable[[], Execution]:
    """Return a zero-argument constructor for the configured style."""
    if config.backend is BackendKind.REMOTE:
        if workers is None or sessions is None:
            raise ValueError("remote backend requires a worker and session registry")

        def _remote() -> Execution:
            return RemoteExecution(
                workers, sessions, ready_timeout=config.ready_timeout_seconds,
            )
        return _remote

    def _sdk() -> Execution:
        return SdkExecution(permission_mode=config.permission_mode)
    return _sdk
