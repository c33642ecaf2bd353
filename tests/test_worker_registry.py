"""Worker spawning, port allocation and exit handling."""

from __future__ import annotations

import asyncio
import socket
from unittest.mock import AsyncMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from threadrelay.engine.errors import (
    NoPortAvailableError,
    ReadinessTimeoutError,
    WorkerSpawnError,
)
from threadrelay.engine.worker_registry import WorkerRegistry


class FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode = None
        self.killed = False
        self._error: Exception | None = None
        self._exited = asyncio.Event()

    async def wait(self):
        await self._exited.wait()
        if self._error is not None:
            raise self._error
        return self.returncode

    def kill(self):
        self.killed = True
        self.exit(-9)

    def exit(self, code: int = 0) -> None:
        self.returncode = code
        self._exited.set()

    def fail(self, error: Exception) -> None:
        self._error = error
        self._exited.set()


class FakeSpawner:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], str]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, command, cwd):
        await asyncio.sleep(0)
        self.calls.append((list(command), cwd))
        process = FakeProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        return process


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _registry(spawner, **kwargs) -> WorkerRegistry:
    kwargs.setdefault("port_probe", lambda port: True)
    return WorkerRegistry(process_factory=spawner, **kwargs)


@pytest.mark.asyncio
async def test_concurrent_spawns_share_one_worker():
    spawner = FakeSpawner()
    registry = _registry(spawner)

    ports = await asyncio.gather(*(registry.spawn_worker("/proj/a") for _ in range(5)))

    assert len(set(ports)) == 1
    assert len(spawner.calls) == 1
    command, cwd = spawner.calls[0]
    assert command == ["opencode", "serve", "--port", str(ports[0])]
    assert cwd == "/proj/a"
    registry.stop_all()


@pytest.mark.asyncio
async def test_spawn_returns_existing_port_without_respawning():
    spawner = FakeSpawner()
    registry = _registry(spawner)

    first = await registry.spawn_worker("/proj/a")
    second = await registry.spawn_worker("/proj/a")

    assert first == second
    assert len(spawner.calls) == 1
    assert registry.get_port("/proj/a") == first
    registry.stop_all()


@pytest.mark.asyncio
async def test_projects_get_distinct_ports_in_range():
    spawner = FakeSpawner()
    registry = _registry(spawner, port_min=15000, port_max=15010)

    ports = await asyncio.gather(
        registry.spawn_worker("/proj/a"),
        registry.spawn_worker("/proj/b"),
        registry.spawn_worker("/proj/c"),
    )

    assert len(set(ports)) == 3
    assert all(15000 <= p <= 15010 for p in ports)
    assert sorted(registry.list_instances()) == sorted(
        zip(["/proj/a", "/proj/b", "/proj/c"], ports)
    )
    registry.stop_all()


@pytest.mark.asyncio
async def test_port_probe_skips_ports_in_use():
    spawner = FakeSpawner()
    registry = _registry(spawner, port_min=15000, port_max=15005, port_probe=lambda p: p != 15000)

    port = await registry.spawn_worker("/proj/a")

    assert port == 15001
    registry.stop_all()


@pytest.mark.asyncio
async def test_exhausted_range_raises_no_port_available():
    spawner = FakeSpawner()
    registry = _registry(spawner, port_min=15000, port_max=15001)
    await registry.spawn_worker("/proj/a")
    await registry.spawn_worker("/proj/b")

    with pytest.raises(NoPortAvailableError) as exc_info:
        await registry.spawn_worker("/proj/c")
    assert exc_info.value.port_min == 15000
    assert exc_info.value.port_max == 15001

    # A failed spawn must not leave a pending entry behind
    with pytest.raises(NoPortAvailableError):
        await registry.spawn_worker("/proj/c")
    registry.stop_all()


@pytest.mark.asyncio
async def test_spawn_failure_reaches_every_joiner_and_frees_port():
    attempts = 0

    async def failing(command, cwd):
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(0)
        raise FileNotFoundError("opencode")

    registry = _registry(failing, port_min=15000, port_max=15000)

    results = await asyncio.gather(
        registry.spawn_worker("/proj/a"),
        registry.spawn_worker("/proj/a"),
        return_exceptions=True,
    )

    assert attempts == 1
    assert all(isinstance(r, WorkerSpawnError) for r in results)
    assert registry.get_port("/proj/a") is None

    # The only port in range is free again
    registry._process_factory = FakeSpawner()
    assert await registry.spawn_worker("/proj/a") == 15000
    registry.stop_all()


@pytest.mark.asyncio
async def test_exit_with_dead_port_deregisters():
    spawner = FakeSpawner()
    registry = _registry(spawner)
    registry.is_responding = AsyncMock(return_value=False)
    port = await registry.spawn_worker("/proj/a")

    spawner.processes[0].exit(1)
    await _settle()

    registry.is_responding.assert_awaited_once_with(port)
    assert registry.get_port("/proj/a") is None


@pytest.mark.asyncio
async def test_exit_with_responding_port_keeps_mapping():
    spawner = FakeSpawner()
    registry = _registry(spawner)
    registry.is_responding = AsyncMock(return_value=True)
    port = await registry.spawn_worker("/proj/a")

    spawner.processes[0].exit(0)
    await _settle()

    assert registry.get_port("/proj/a") == port
    registry.stop_all()


@pytest.mark.asyncio
async def test_stale_exit_does_not_evict_respawned_worker():
    spawner = FakeSpawner()
    registry = _registry(spawner)
    registry.is_responding = AsyncMock(return_value=False)

    await registry.spawn_worker("/proj/a")
    old = registry.get_instance("/proj/a")
    assert registry.stop_worker("/proj/a") is True

    await registry.spawn_worker("/proj/a")
    new = registry.get_instance("/proj/a")
    assert new.generation > old.generation

    # Late exit handling for the replaced process
    await registry._watch_exit(old)

    assert registry.get_instance("/proj/a") is new
    registry.is_responding.assert_not_awaited()
    registry.stop_all()


@pytest.mark.asyncio
async def test_stop_all_kills_every_worker():
    spawner = FakeSpawner()
    registry = _registry(spawner)
    await registry.spawn_worker("/proj/a")
    await registry.spawn_worker("/proj/b")

    registry.stop_all()

    assert registry.list_instances() == []
    assert all(p.killed for p in spawner.processes)
    assert registry.stop_worker("/proj/a") is False


@pytest.mark.asyncio
async def test_wait_for_ready_against_live_server():
    async def list_sessions(request):
        return web.json_response([])

    app = web.Application()
    app.router.add_get("/session", list_sessions)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        registry = WorkerRegistry(host="127.0.0.1", poll_interval=0.05)
        assert await registry.is_responding(server.port) is True
        await registry.wait_for_ready(server.port, timeout=2.0)
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_wait_for_ready_times_out_on_silent_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    registry = WorkerRegistry(host="127.0.0.1", poll_interval=0.05, liveness_timeout=0.2)

    with pytest.raises(ReadinessTimeoutError) as exc_info:
        await registry.wait_for_ready(port, timeout=0.2)
    assert exc_info.value.port == port


@pytest.mark.asyncio
async def test_process_error_deregisters_even_if_port_answers():
    spawner = FakeSpawner()
    registry = _registry(spawner)
    registry.is_responding = AsyncMock(return_value=True)
    await registry.spawn_worker("/proj/a")

    spawner.processes[0].fail(OSError("wait failed"))
    await _settle()

    assert registry.get_port("/proj/a") is None
    registry.is_responding.assert_not_awaited()
