"""Thread sessions and the worker's session HTTP surface.

Two concerns meet here:

- the thread -> ThreadSession map (kept in the ThreadStore), which is
  what makes a chat thread feel like one continuous conversation;
- the worker calls that create, validate, prompt and abort sessions.

Probing calls (validate, abort, list) never raise. Calls whose failure
must stop an execution (create, send prompt) raise dedicated errors.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import aiohttp

from threadrelay.shared.services.thread_store import ThreadStore

from .errors import PromptSendFailedError, SessionCreateFailedError
from .models import ThreadSession

logger = logging.getLogger(__name__)

_PROBE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


class SessionRegistry:
    """Creates, validates and resumes sessions bound to chat threads."""

    def __init__(
        self,
        store: ThreadStore,
        *,
        host: str = "localhost",
        request_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._host = host
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

    def _url(self, port: int, path: str) -> str:
        return f"http://{self._host}:{port}{path}"

    # ── Worker session calls ─────────────────────────────────

    async def create_session(self, port: int) -> str:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.post(self._url(port, "/session"), json={}) as resp:
                    if not resp.ok:
                        raise SessionCreateFailedError(port, f"HTTP {resp.status}")
                    payload: Any = await resp.json(content_type=None)
        except SessionCreateFailedError:
            raise
        except _PROBE_ERRORS as exc:
            raise SessionCreateFailedError(port, str(exc) or type(exc).__name__) from exc

        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not session_id:
            raise SessionCreateFailedError(port, "response carried no session id")
        logger.info("Created session %s on port %d", session_id, port)
        return str(session_id)

    async def validate_session(self, port: int, session_id: str) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.get(self._url(port, f"/session/{session_id}")) as resp:
                    return resp.ok
        except _PROBE_ERRORS:
            logger.debug("Session %s validation failed on port %d", session_id, port)
            return False

    async def list_sessions(self, port: int) -> list[str]:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.get(self._url(port, "/session")) as resp:
                    if not resp.ok:
                        return []
                    payload = await resp.json(content_type=None)
        except _PROBE_ERRORS:
            return []
        if not isinstance(payload, list):
            return []
        return [
            str(item["id"])
            for item in payload
            if isinstance(item, dict) and item.get("id")
        ]

    async def send_prompt(self, port: int, session_id: str, text: str) -> None:
        """Submit a prompt; the worker processes it asynchronously."""
        body = {"parts": [{"type": "text", "text": text}]}
        url = self._url(port, f"/session/{session_id}/prompt_async")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.post(url, json=body) as resp:
                    if not resp.ok:
                        detail = (await resp.text())[:200]
                        raise PromptSendFailedError(session_id, resp.status, detail)
        except PromptSendFailedError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise PromptSendFailedError(session_id, 0, str(exc) or type(exc).__name__) from exc
        logger.debug("Prompt sent to session %s (%d chars)", session_id, len(text))

    async def abort_session(self, port: int, session_id: str) -> bool:
        url = self._url(port, f"/session/{session_id}/abort")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.post(url) as resp:
                    return resp.ok
        except _PROBE_ERRORS:
            logger.warning("Abort request for session %s failed", session_id, exc_info=True)
            return False

    async def resolve_session(
        self, port: int, resume_session_id: str | None,
    ) -> tuple[str, bool]:
        """Reuse resume_session_id if the worker still knows it, else create.

        Returns (session_id, reused). Callers only pass a resume id whose
        stored project path matches the current workspace.
        """
        if resume_session_id and await self.validate_session(port, resume_session_id):
            logger.info("Resuming session %s on port %d", resume_session_id, port)
            return resume_session_id, True
        if resume_session_id:
            logger.info(
                "Stored session %s no longer valid on port %d; creating new",
                resume_session_id, port,
            )
        return await self.create_session(port), False

    # ── Thread mapping ───────────────────────────────────────

    def get_session_for_thread(self, thread_id: str) -> ThreadSession | None:
        return self._store.get_thread_session(thread_id)

    def set_session_for_thread(
        self,
        thread_id: str,
        session_id: str,
        project_path: str,
        port: int = 0,
    ) -> ThreadSession:
        now = datetime.now(timezone.utc)
        session = ThreadSession(
            thread_id=thread_id,
            session_id=session_id,
            project_path=project_path,
            port=port,
            created_at=now,
            last_used_at=now,
        )
        self._store.set_thread_session(session)
        return session

    def update_last_used(self, thread_id: str) -> None:
        self._store.update_thread_session_last_used(thread_id)

    def clear_session(self, thread_id: str) -> None:
        self._store.clear_thread_session(thread_id)

    def resume_candidate(self, thread_id: str, effective_path: str) -> str | None:
        """Stored session id for thread, if it belongs to effective_path."""
        session = self._store.get_thread_session(thread_id)
        if session is None or session.project_path != effective_path:
            return None
        return session.session_id
