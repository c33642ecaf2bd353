"""Dispatcher: the chat-handler side of prompt execution.

Decides whether a prompt runs now or waits in the thread's queue,
resolves the workspace the prompt runs in, wires an Execution's
lifecycle callbacks to session bookkeeping, progress display and the
queue, and owns the per-thread progress ticker.

BUSY INVARIANT:
   run_prompt() registers the new Execution in ActiveExecutions before
   its first await. Everything between the busy check in submit() and
   that registration runs in one event-loop turn, so two prompts for
   the same thread can never both start.

TICKER:
   Each running thread has at most one progress task in self._tickers.
   Every terminal path (complete, error, start() raising) pops and
   cancels it exactly once via _stop_ticker(), which leaves a ticker
   owned by a newer execution alone.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from functools import partial
from types import ModuleType
from typing import Any, Protocol

from threadrelay.shared.services import workspace as default_workspace
from threadrelay.shared.services.thread_store import ThreadStore
from threadrelay.shared.services.workspace import WorkspaceError

from .config import RelayConfig
from .execution import (
    ActiveExecutions,
    Execution,
    ExecutionCallbacks,
    build_execution_factory,
)
from .models import (
    BackendKind,
    ExecutionOptions,
    ExecutionResult,
    QueuedPrompt,
    WorktreeMapping,
)
from .prompt_queue import PromptQueue
from .session_registry import SessionRegistry
from .worker_registry import WorkerRegistry

logger = logging.getLogger(__name__)


class ProgressRenderer(Protocol):
    """User-facing output. Receives only plain strings and ints."""

    async def started(self, thread_id: str, prompt: str, branch: str, model: str) -> None: ...

    async def status(self, thread_id: str, message: str) -> None: ...

    async def progress(self, thread_id: str, text: str, tick: int) -> None: ...

    async def completed(self, thread_id: str, text: str, summary: str) -> None: ...

    async def failed(self, thread_id: str, message: str) -> None: ...

    async def notice(self, thread_id: str, message: str) -> None: ...


def completion_summary(result: ExecutionResult) -> str:
    summary = "Done"
    if result.cost_usd is not None and result.cost_usd > 0:
        summary += f" | ${result.cost_usd:.4f}"
    if result.num_turns is not None:
        summary += f" | {result.num_turns} turns"
    return summary


class Dispatcher:
    """Runs and queues prompts per thread."""

    def __init__(
        self,
        config: RelayConfig,
        store: ThreadStore,
        renderer: ProgressRenderer,
        *,
        workers: WorkerRegistry | None = None,
        sessions: SessionRegistry | None = None,
        execution_factory: Callable[[], Execution] | None = None,
        workspace: ModuleType | Any = default_workspace,
    ) -> None:
        self._config = config
        self._store = store
        self._renderer = renderer
        self._workspace = workspace
        self.sessions = sessions or SessionRegistry(store, host=config.worker_host)
        if workers is None and config.backend is BackendKind.REMOTE:
            workers = WorkerRegistry(
                port_min=config.port_min,
                port_max=config.port_max,
                command=config.worker_command,
                host=config.worker_host,
                poll_interval=config.ready_poll_interval_seconds,
                liveness_timeout=config.liveness_timeout_seconds,
            )
        self.workers = workers
        self.active = ActiveExecutions()
        self.queue = PromptQueue(store, self._run_queued, self.active.is_busy)
        self._execution_factory = execution_factory or build_execution_factory(
            config, self.workers, self.sessions,
        )
        self._tickers: dict[str, tuple[Execution, asyncio.Task]] = {}

    # ── Entry points ─────────────────────────────────────────

    def is_busy(self, thread_id: str) -> bool:
        return self.active.is_busy(thread_id)

    async def submit(
        self,
        thread_id: str,
        channel_id: str,
        prompt: str,
        requester_id: str = "",
    ) -> bool:
        """Run prompt now, or queue it; returns True if it started.

        A prompt queued behind leftovers on an idle thread (for example
        a queue restored from disk) kicks the queue so it drains.
        """
        self._store.set_thread_channel(thread_id, channel_id)
        if self.queue.should_enqueue(thread_id):
            position = self.queue.enqueue(thread_id, prompt, requester_id)
            await self._render("notice", thread_id, f"Queued at position {position}.")
            if not self.active.is_busy(thread_id):
                await self.queue.process_next(thread_id)
            return False
        await self.run_prompt(thread_id, channel_id, prompt)
        return True

    async def run_prompt(self, thread_id: str, channel_id: str, prompt: str) -> None:
        project_path = self._store.get_channel_project_path(channel_id)
        if not project_path:
            await self._abandon(thread_id, "No project bound to this channel.")
            return
        if self.active.is_busy(thread_id):
            position = self.queue.enqueue(thread_id, prompt, "")
            await self._render("notice", thread_id, f"Queued at position {position}.")
            return

        execution = self._execution_factory()
        self.active.set(thread_id, execution)
        # The thread is busy from here on; awaiting is safe.

        mapping, created = await self._resolve_worktree(
            thread_id, channel_id, project_path, prompt,
        )
        effective_path = mapping.worktree_path if mapping else project_path
        model = self._store.get_channel_model(channel_id) or self._config.default_model

        if self._store.get_queue_settings(thread_id).fresh_context:
            self.sessions.clear_session(thread_id)
        resume_id = self.sessions.resume_candidate(thread_id, effective_path)

        if created:
            await self._render(
                "notice", thread_id,
                f"Created worktree {mapping.worktree_path} on branch {mapping.branch_name}.",
            )
        if mapping:
            branch = mapping.branch_name
        else:
            branch = await asyncio.to_thread(
                self._workspace.get_current_branch, effective_path,
            )
        branch = branch or "main"
        await self._render("started", thread_id, prompt, branch, model or "default")
        await self._render(
            "status", thread_id,
            f"Resuming session {resume_id}" if resume_id else "Starting new session",
        )

        callbacks = ExecutionCallbacks(
            on_session_init=partial(self._on_session_init, thread_id, effective_path, execution),
            on_complete=partial(self._on_complete, thread_id, execution),
            on_error=partial(self._on_error, thread_id, execution),
        )
        self._start_ticker(thread_id, execution)
        logger.info(
            "Running prompt for thread %s in %s (resume=%s model=%s)",
            thread_id, effective_path, resume_id, model,
        )
        try:
            await execution.start(
                effective_path,
                prompt,
                ExecutionOptions(resume_session_id=resume_id, model=model),
                callbacks,
            )
        except Exception as exc:
            logger.exception("Execution for thread %s failed to start", thread_id)
            if self.active.get(thread_id) is execution:
                await self._on_error(thread_id, execution, exc)

    async def interrupt(self, thread_id: str) -> bool:
        interrupted = await self.active.interrupt(thread_id)
        logger.info("Interrupt for thread %s: %s", thread_id, "sent" if interrupted else "nothing to interrupt")
        return interrupted

    async def wait_idle(self, thread_id: str, poll_interval: float = 0.1) -> None:
        """Block until the thread is idle and has nothing runnable queued."""
        while True:
            if not self.active.is_busy(thread_id):
                paused = self._store.get_queue_settings(thread_id).paused
                if paused or not self.queue.pending(thread_id):
                    return
            await asyncio.sleep(poll_interval)

    async def shutdown(self) -> None:
        for thread_id in list(self._tickers):
            self._stop_ticker(thread_id)
        for thread_id in self.active.threads():
            if self.active.is_busy(thread_id):
                await self.active.interrupt(thread_id)
        if self.workers is not None:
            self.workers.stop_all()
        logger.info("Dispatcher shut down")

    # ── Lifecycle handlers ───────────────────────────────────

    def _on_session_init(
        self,
        thread_id: str,
        effective_path: str,
        execution: Execution,
        session_id: str,
    ) -> None:
        stored = self.sessions.get_session_for_thread(thread_id)
        if (
            stored is not None
            and stored.session_id == session_id
            and stored.project_path == effective_path
        ):
            self.sessions.update_last_used(thread_id)
            return
        self.sessions.set_session_for_thread(
            thread_id, session_id, effective_path, port=execution.port,
        )

    async def _on_complete(
        self, thread_id: str, execution: Execution, result: ExecutionResult,
    ) -> None:
        self._stop_ticker(thread_id, execution)
        self.active.clear(thread_id, execution)
        await self._render("completed", thread_id, result.text, completion_summary(result))
        await self.queue.on_execution_complete(thread_id)

    async def _on_error(
        self, thread_id: str, execution: Execution, error: Exception,
    ) -> None:
        self._stop_ticker(thread_id, execution)
        self.active.clear(thread_id, execution)
        await self._render("failed", thread_id, str(error) or type(error).__name__)
        if not await self.queue.on_execution_error(thread_id):
            await self._render("notice", thread_id, "Execution failed. Queue cleared.")

    async def _abandon(self, thread_id: str, message: str) -> None:
        """A prompt could not run at all; apply the failure policy to the rest."""
        await self._render("notice", thread_id, message)
        if self.active.is_busy(thread_id) or not self.queue.pending(thread_id):
            return
        if not await self.queue.on_execution_error(thread_id):
            await self._render("notice", thread_id, "Queue cleared.")

    async def _run_queued(self, thread_id: str, item: QueuedPrompt) -> None:
        channel_id = self._store.get_thread_channel(thread_id)
        if channel_id is None:
            logger.warning("Thread %s has queued prompts but no channel", thread_id)
            await self._abandon(thread_id, "Cannot run queued prompt: thread has no channel.")
            return
        await self.run_prompt(thread_id, channel_id, item.prompt)

    # ── Workspace ────────────────────────────────────────────

    async def _resolve_worktree(
        self,
        thread_id: str,
        channel_id: str,
        project_path: str,
        prompt: str,
    ) -> tuple[WorktreeMapping | None, bool]:
        mapping = self._store.get_worktree_mapping(thread_id)
        if mapping is not None:
            return mapping, False
        binding = self._store.get_channel_binding(channel_id)
        if binding is None or not self._store.get_project_auto_worktree(binding.project_alias):
            return None, False

        branch = self._workspace.sanitize_branch_name(
            f"auto/{thread_id[:8]}-{int(time.time() * 1000)}"
        )
        try:
            path = await asyncio.to_thread(
                self._workspace.create_worktree, project_path, branch,
            )
        except (WorkspaceError, OSError):
            logger.exception("Auto-worktree creation failed for thread %s", thread_id)
            return None, False
        mapping = WorktreeMapping(
            thread_id=thread_id,
            branch_name=branch,
            worktree_path=path,
            project_path=project_path,
            description=prompt[:50] + ("..." if len(prompt) > 50 else ""),
        )
        self._store.set_worktree_mapping(mapping)
        return mapping, True

    # ── Progress ticker ──────────────────────────────────────

    def _start_ticker(self, thread_id: str, execution: Execution) -> None:
        self._stop_ticker(thread_id)
        task = asyncio.create_task(
            self._tick(thread_id, execution), name=f"progress:{thread_id}",
        )
        self._tickers[thread_id] = (execution, task)

    def _stop_ticker(self, thread_id: str, execution: Execution | None = None) -> None:
        """Cancel the thread's ticker; with execution given, only if it owns it."""
        entry = self._tickers.get(thread_id)
        if entry is None:
            return
        owner, task = entry
        if execution is not None and owner is not execution:
            return
        del self._tickers[thread_id]
        if task is not asyncio.current_task():
            task.cancel()

    async def _tick(self, thread_id: str, execution: Execution) -> None:
        tick = 0
        last_text: str | None = None
        while not execution.completed:
            await asyncio.sleep(self._config.progress_interval_seconds)
            if execution.completed:
                break
            tick += 1
            text = execution.accumulated_text
            # Refresh on change, and every other tick to keep spinners moving
            if text != last_text or tick % 2 == 0:
                last_text = text
                await self._render("progress", thread_id, text, tick)

    async def _render(self, method: str, *args: Any) -> None:
        try:
            await getattr(self._renderer, method)(*args)
        except Exception:
            logger.warning("Renderer %s failed", method, exc_info=True)
