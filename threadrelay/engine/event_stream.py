"""Server-sent-events client for a running worker.

Opens ``GET {base_url}/event`` and keeps it open, decoding the small
part of the worker's event vocabulary that execution cares about:

    message.part.updated  -> on_part_updated(TextPart)
        The part carries the *full* current text, so subscribers must
        replace their buffer rather than append to it.
    session.idle          -> on_session_idle(session_id)
        The session finished processing; the execution is terminal.

Undecodable payloads become TransportParseError and transport failures
become TransportConnectionError, both delivered to on_error subscribers.
Subscribers may be plain functions or coroutines and are invoked in
registration order from the reader task.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from .errors import TransportConnectionError, TransportParseError
from .models import TextPart

logger = logging.getLogger(__name__)

PartUpdatedCallback = Callable[[TextPart], Any]
SessionIdleCallback = Callable[[str], Any]
ErrorCallback = Callable[[Exception], Any]


class EventStreamClient:
    """Persistent event-stream connection with multi-subscriber fan-out."""

    def __init__(self, connect_timeout: float = 10.0) -> None:
        self._connect_timeout = connect_timeout
        self._http: aiohttp.ClientSession | None = None
        self._response: aiohttp.ClientResponse | None = None
        self._reader: asyncio.Task | None = None
        self._url: str | None = None
        self._closing = False
        self._part_updated: list[PartUpdatedCallback] = []
        self._session_idle: list[SessionIdleCallback] = []
        self._error: list[ErrorCallback] = []

    # ── Subscriptions ────────────────────────────────────────

    def on_part_updated(self, callback: PartUpdatedCallback) -> None:
        self._part_updated.append(callback)

    def on_session_idle(self, callback: SessionIdleCallback) -> None:
        self._session_idle.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error.append(callback)

    # ── Connection ───────────────────────────────────────────

    async def connect(self, base_url: str) -> None:
        """Open the stream; raises TransportConnectionError on failure."""
        if self._response is not None:
            await self.disconnect()
        self._closing = False
        self._url = f"{base_url.rstrip('/')}/event"
        # No total timeout: the stream stays open for the whole execution
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=self._connect_timeout,
        )
        self._http = aiohttp.ClientSession(timeout=timeout)
        try:
            response = await self._http.get(
                self._url, headers={"Accept": "text/event-stream"},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            await self._close_http()
            raise TransportConnectionError(self._url, str(exc) or type(exc).__name__) from exc
        if not response.ok:
            response.release()
            await self._close_http()
            raise TransportConnectionError(self._url, f"HTTP {response.status}")

        self._response = response
        self._reader = asyncio.create_task(
            self._read_loop(response), name=f"event-stream:{self._url}",
        )
        logger.debug("Event stream connected: %s", self._url)

    def is_connected(self) -> bool:
        return (
            self._response is not None
            and not self._response.closed
            and self._reader is not None
            and not self._reader.done()
        )

    async def disconnect(self) -> None:
        """Close the stream. Safe to call repeatedly or before connect()."""
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if self._response is not None:
            self._response.close()
            self._response = None
        await self._close_http()

    async def _close_http(self) -> None:
        if self._http is not None:
            http, self._http = self._http, None
            await http.close()

    # ── Reading ──────────────────────────────────────────────

    async def _read_loop(self, response: aiohttp.ClientResponse) -> None:
        event_name = "message"
        data_lines: list[str] = []
        try:
            async for raw in response.content:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    if data_lines:
                        await self._dispatch(event_name, "\n".join(data_lines))
                    event_name = "message"
                    data_lines = []
                    continue
                if line.startswith(":"):
                    continue  # keep-alive comment
                field, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if field == "data":
                    data_lines.append(value)
                elif field == "event":
                    event_name = value or "message"
            if not self._closing:
                await self._emit_error(
                    TransportConnectionError(self._url or "", "event stream closed by worker")
                )
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            if not self._closing:
                await self._emit_error(
                    TransportConnectionError(self._url or "", str(exc) or type(exc).__name__)
                )

    async def _dispatch(self, event_name: str, data: str) -> None:
        if event_name != "message":
            return
        try:
            event = json.loads(data)
        except ValueError as exc:
            await self._emit_error(TransportParseError(data, str(exc)))
            return
        if not isinstance(event, dict):
            await self._emit_error(
                TransportParseError(data, "event payload is not an object")
            )
            return

        event_type = event.get("type")
        properties = event.get("properties") or {}
        if event_type == "message.part.updated":
            part = properties.get("part") if isinstance(properties, dict) else None
            if isinstance(part, dict) and part.get("type") == "text":
                text_part = TextPart(
                    id=part.get("id"),
                    session_id=part.get("sessionID"),
                    message_id=part.get("messageID"),
                    text=part.get("text") or "",
                )
                for callback in list(self._part_updated):
                    await self._invoke(callback, text_part)
        elif event_type == "session.idle":
            session_id = properties.get("sessionID") if isinstance(properties, dict) else None
            if session_id:
                for callback in list(self._session_idle):
                    await self._invoke(callback, session_id)

    async def _emit_error(self, error: Exception) -> None:
        logger.debug("Event stream error: %s", error)
        for callback in list(self._error):
            await self._invoke(callback, error)

    @staticmethod
    async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Event stream subscriber %r failed", callback)
