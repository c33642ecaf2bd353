"""Per-thread FIFO of prompts waiting for the thread to go idle.

The queue never runs anything itself; it pops the oldest prompt and
hands it to the ``run_prompt`` collaborator. Advancing is driven by the
dispatcher's terminal handlers:

    on complete  -> on_execution_complete()  always advances
    on error     -> on_execution_error()     advances only with
                                             continue_on_failure, else
                                             discards what is left
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict

from threadrelay.shared.services.thread_store import ThreadStore

from .models import QueuedPrompt, QueueSettings

logger = logging.getLogger(__name__)

RunPrompt = Callable[[str, QueuedPrompt], Awaitable[None]]


class PromptQueue:
    """Queue state and run policy for every thread."""

    def __init__(
        self,
        store: ThreadStore,
        run_prompt: RunPrompt,
        is_busy: Callable[[str], bool],
    ) -> None:
        self._store = store
        self._run_prompt = run_prompt
        self._is_busy = is_busy

    def enqueue(self, thread_id: str, prompt: str, requester_id: str) -> int:
        """Append a prompt and return its 1-based position."""
        position = self._store.add_to_queue(
            thread_id, QueuedPrompt(prompt=prompt, requester_id=requester_id),
        )
        logger.info("Queued prompt for thread %s at position %d", thread_id, position)
        return position

    def pending(self, thread_id: str) -> list[QueuedPrompt]:
        return self._store.get_queue(thread_id)

    def should_enqueue(self, thread_id: str) -> bool:
        """True when a new prompt must wait instead of running now."""
        return self._is_busy(thread_id) or bool(self._store.get_queue(thread_id))

    def clear(self, thread_id: str) -> int:
        dropped = len(self._store.get_queue(thread_id))
        self._store.clear_queue(thread_id)
        if dropped:
            logger.info("Cleared %d queued prompt(s) for thread %s", dropped, thread_id)
        return dropped

    async def process_next(self, thread_id: str) -> QueuedPrompt | None:
        """Pop and dispatch the oldest prompt, if the thread may advance."""
        if self._store.get_queue_settings(thread_id).paused:
            logger.debug("Queue for thread %s is paused", thread_id)
            return None
        if self._is_busy(thread_id):
            return None
        item = self._store.pop_from_queue(thread_id)
        if item is None:
            return None
        logger.info(
            "Dispatching queued prompt for thread %s (%d left)",
            thread_id, len(self._store.get_queue(thread_id)),
        )
        await self._run_prompt(thread_id, item)
        return item

    async def on_execution_complete(self, thread_id: str) -> None:
        await self.process_next(thread_id)

    async def on_execution_error(self, thread_id: str) -> bool:
        """Apply the failure policy; True if the queue keeps going."""
        if self._store.get_queue_settings(thread_id).continue_on_failure:
            await self.process_next(thread_id)
            return True
        self.clear(thread_id)
        return False

    # ── Settings ─────────────────────────────────────────────

    def get_settings(self, thread_id: str) -> QueueSettings:
        return self._store.get_queue_settings(thread_id)

    def update_settings(self, thread_id: str, **changes: bool) -> QueueSettings:
        current = asdict(self._store.get_queue_settings(thread_id))
        unknown = set(changes) - current.keys()
        if unknown:
            raise ValueError(f"Unknown queue settings: {', '.join(sorted(unknown))}")
        current.update(changes)
        settings = QueueSettings(**current)
        self._store.set_queue_settings(thread_id, settings)
        return settings

    def pause(self, thread_id: str) -> None:
        self.update_settings(thread_id, paused=True)

    async def resume(self, thread_id: str) -> QueuedPrompt | None:
        self.update_settings(thread_id, paused=False)
        return await self.process_next(thread_id)
