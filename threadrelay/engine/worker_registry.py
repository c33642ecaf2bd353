"""Per-project worker processes and the ports they listen on.

One worker server is spawned per project workspace and kept for as
long as it answers on its port. The registry is the only owner of the
project -> WorkerInstance mapping.

EXIT HANDLING:
   A watcher task awaits every spawned process. An exit does not always
   mean the worker is gone (a supervising wrapper may have restarted the
   real server), so the watcher probes the port once before
   deregistering. Each instance carries a generation number; a watcher
   only ever touches the instance it was started for, so a late exit
   from a replaced process cannot evict its successor.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import aiohttp

from .config import PORT_MAX, PORT_MIN
from .errors import NoPortAvailableError, ReadinessTimeoutError, WorkerSpawnError
from .models import WorkerInstance

logger = logging.getLogger(__name__)

# async def factory(command, cwd) -> process with wait()/kill()/pid/returncode
ProcessFactory = Callable[[Sequence[str], str], Awaitable[Any]]


def is_port_free(port: int) -> bool:
    """Transient bind-and-release probe."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError:
            return False
    return True


async def _spawn_process(command: Sequence[str], cwd: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *command,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )


class WorkerRegistry:
    """Spawns, tracks and stops one worker server per project path."""

    def __init__(
        self,
        *,
        port_min: int = PORT_MIN,
        port_max: int = PORT_MAX,
        command: Sequence[str] = ("opencode", "serve"),
        host: str = "localhost",
        poll_interval: float = 0.5,
        liveness_timeout: float = 2.0,
        process_factory: ProcessFactory | None = None,
        port_probe: Callable[[int], bool] | None = None,
    ) -> None:
        self._port_min = port_min
        self._port_max = port_max
        self._command = list(command)
        self._host = host
        self._poll_interval = poll_interval
        self._liveness_timeout = liveness_timeout
        self._process_factory = process_factory or _spawn_process
        self._port_probe = port_probe or is_port_free

        self._instances: dict[str, WorkerInstance] = {}
        # In-flight spawns, so concurrent callers converge on one worker
        self._spawning: dict[str, asyncio.Future[int]] = {}
        self._reserved_ports: set[int] = set()
        self._watchers: dict[str, asyncio.Task] = {}
        self._generation = 0

    @property
    def port_range(self) -> tuple[int, int]:
        return (self._port_min, self._port_max)

    def base_url(self, port: int) -> str:
        return f"http://{self._host}:{port}"

    # ── Spawning ─────────────────────────────────────────────

    async def spawn_worker(self, project_path: str) -> int:
        """Return the port of the project's worker, starting it if needed."""
        existing = self._instances.get(project_path)
        if existing is not None:
            return existing.port

        pending = self._spawning.get(project_path)
        if pending is not None:
            logger.debug("Joining in-flight spawn for %s", project_path)
            return await asyncio.shield(pending)

        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self._spawning[project_path] = future
        try:
            port = await self._start_instance(project_path)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a spawn nobody joined doesn't log noise
            future.exception()
            raise
        else:
            future.set_result(port)
            return port
        finally:
            self._spawning.pop(project_path, None)

    async def _start_instance(self, project_path: str) -> int:
        port = self._allocate_port()
        self._reserved_ports.add(port)
        try:
            command = [*self._command, "--port", str(port)]
            logger.info(
                "Starting worker for %s on port %d: %s",
                project_path, port, " ".join(command),
            )
            try:
                process = await self._process_factory(command, project_path)
            except OSError as exc:
                raise WorkerSpawnError(project_path, str(exc)) from exc

            self._generation += 1
            instance = WorkerInstance(
                project_path=project_path,
                port=port,
                process=process,
                generation=self._generation,
            )
            self._instances[project_path] = instance
        finally:
            self._reserved_ports.discard(port)

        self._watchers[project_path] = asyncio.create_task(
            self._watch_exit(instance),
            name=f"worker-exit:{port}",
        )
        logger.info(
            "Worker registered for %s (port=%d pid=%s generation=%d)",
            project_path, port, getattr(process, "pid", None),
            instance.generation,
        )
        return port

    def _allocate_port(self) -> int:
        in_use = {inst.port for inst in self._instances.values()}
        in_use |= self._reserved_ports
        for port in range(self._port_min, self._port_max + 1):
            if port in in_use:
                continue
            if self._port_probe(port):
                return port
        raise NoPortAvailableError(self._port_min, self._port_max)

    # ── Exit handling ────────────────────────────────────────

    async def _watch_exit(self, instance: WorkerInstance) -> None:
        try:
            returncode = await instance.process.wait()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Worker process error for %s (port=%d)",
                instance.project_path, instance.port,
            )
            self._deregister(instance)
            return

        if not self._is_current(instance):
            return
        logger.info(
            "Worker for %s exited (port=%d code=%s); re-probing",
            instance.project_path, instance.port, returncode,
        )
        if await self.is_responding(instance.port):
            logger.info(
                "Worker port %d still responding after exit; keeping mapping",
                instance.port,
            )
            return
        self._deregister(instance)

    def _is_current(self, instance: WorkerInstance) -> bool:
        current = self._instances.get(instance.project_path)
        return current is not None and current.generation == instance.generation

    def _deregister(self, instance: WorkerInstance) -> None:
        if not self._is_current(instance):
            return
        del self._instances[instance.project_path]
        watcher = self._watchers.get(instance.project_path)
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        self._watchers.pop(instance.project_path, None)
        logger.info(
            "Worker for %s deregistered (port=%d)",
            instance.project_path, instance.port,
        )

    # ── Queries ──────────────────────────────────────────────

    def get_port(self, project_path: str) -> int | None:
        instance = self._instances.get(project_path)
        return instance.port if instance else None

    def get_instance(self, project_path: str) -> WorkerInstance | None:
        return self._instances.get(project_path)

    def list_instances(self) -> list[tuple[str, int]]:
        return [(path, inst.port) for path, inst in self._instances.items()]

    # ── Stopping ─────────────────────────────────────────────

    def stop_worker(self, project_path: str) -> bool:
        instance = self._instances.get(project_path)
        if instance is None:
            return False
        self._kill(instance)
        self._deregister(instance)
        return True

    def stop_all(self) -> None:
        for instance in list(self._instances.values()):
            self._kill(instance)
            self._deregister(instance)

    @staticmethod
    def _kill(instance: WorkerInstance) -> None:
        process = instance.process
        if getattr(process, "returncode", None) is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass  # already gone
        except OSError:
            logger.warning(
                "Failed to kill worker pid=%s for %s",
                getattr(process, "pid", None), instance.project_path,
                exc_info=True,
            )

    # ── Liveness ─────────────────────────────────────────────

    async def is_responding(self, port: int) -> bool:
        """Single liveness probe; any failure means not responding."""
        timeout = aiohttp.ClientTimeout(total=self._liveness_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.get(f"{self.base_url(port)}/session") as resp:
                    return resp.ok
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
            return False

    async def wait_for_ready(self, port: int, timeout: float = 10.0) -> None:
        """Poll the worker until it answers or raise ReadinessTimeoutError."""
        deadline = time.monotonic() + timeout
        attempts = 0
        while True:
            attempts += 1
            if await self.is_responding(port):
                logger.debug("Worker port %d ready after %d poll(s)", port, attempts)
                return
            if time.monotonic() + self._poll_interval > deadline:
                break
            await asyncio.sleep(self._poll_interval)
        raise ReadinessTimeoutError(port, timeout)
