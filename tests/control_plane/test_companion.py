"""Tests for the companion process manager against a scripted fake server."""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from godex.control_plane.companion import (
    METHOD_NOT_FOUND,
    CompanionExitedError,
    CompanionProcessManager,
    CompanionRequestError,
    CompanionTimeoutError,
    CompanionUnavailableError,
)
from godex.control_plane.models.companion import SpawnSpec
from godex.control_plane.models.enums import CompanionState

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_app_server.py"


def _spec(cwd: Path, command: str = sys.executable) -> SpawnSpec:
    return SpawnSpec(command=command, args=[str(FAKE_SERVER)], cwd=str(cwd))


async def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
async def companion(tmp_path: Path) -> AsyncIterator[CompanionProcessManager]:
    manager = CompanionProcessManager(_spec(tmp_path), restart_base_delay=0.05, request_timeout=10)
    manager.start()
    assert await manager.wait_until_ready(timeout=10)
    yield manager
    await manager.stop()


# -- Handshake -----------------------------------------------------------------


async def test_handshake(companion: CompanionProcessManager) -> None:
    status = companion.get_status()
    assert status.state == CompanionState.READY
    assert status.pid is not None
    assert status.last_error is None
    assert companion.is_ready()

    await _wait_for(lambda: any("stderr: fake stderr hello" in line for line in companion.get_log_lines()))
    logs = companion.get_log_lines()
    assert any("initialized:" in line and "fake/1.0" in line for line in logs)
    assert logs[0].startswith("[") and "spawn:" in logs[0]


async def test_initialized_notification_reaches_server(tmp_path: Path) -> None:
    manager = CompanionProcessManager(_spec(tmp_path))
    received: list[dict] = []
    manager.subscribe(received.append)
    manager.start()
    try:
        assert await manager.wait_until_ready(timeout=10)
        await _wait_for(lambda: any(message["method"] == "server/ready" for message in received))
    finally:
        await manager.stop()


async def test_request_before_ready_is_rejected(tmp_path: Path) -> None:
    manager = CompanionProcessManager(_spec(tmp_path))

    with pytest.raises(CompanionUnavailableError):
        await manager.request("echo", {"x": 1})
    assert manager.get_status().state == CompanionState.STOPPED


# -- Requests ------------------------------------------------------------------


async def test_echo(companion: CompanionProcessManager) -> None:
    assert await companion.request("echo", {"value": [1, 2]}) == {"value": [1, 2]}


async def test_requests_are_pipelined(companion: CompanionProcessManager) -> None:
    finished: list[str] = []

    async def call(method: str, params: dict) -> None:
        await companion.request(method, params)
        finished.append(method)

    await asyncio.gather(call("slow", {"delay": 0.5}), call("echo", {}))

    assert finished == ["echo", "slow"]


async def test_request_timeout(companion: CompanionProcessManager) -> None:
    with pytest.raises(CompanionTimeoutError) as exc_info:
        await companion.request("slow", {"delay": 2}, timeout=0.1)

    assert exc_info.value.method == "slow"
    assert str(exc_info.value) == "codex app-server request timeout: slow"
    # The late answer is discarded and the channel keeps working.
    assert await companion.request("echo", {"ok": True}) == {"ok": True}


async def test_remote_error(companion: CompanionProcessManager) -> None:
    with pytest.raises(CompanionRequestError) as exc_info:
        await companion.request("fail")

    error = exc_info.value
    assert error.method == "fail"
    assert error.code == -32000
    assert error.message == "boom"
    assert error.data == {"why": "test"}


def test_request_error_from_payload_defaults() -> None:
    error = CompanionRequestError.from_payload("x", {"code": "nope"})
    assert error.code is None
    assert error.message == "codex app-server error"


# -- Inbound -------------------------------------------------------------------


async def test_notifications_reach_subscribers(companion: CompanionProcessManager) -> None:
    received: list[dict] = []
    unsubscribe = companion.subscribe(received.append)

    await companion.request("notify", {"threadId": "t1"})
    await _wait_for(lambda: bool(received))
    unsubscribe()
    await companion.request("notify", {"threadId": "t2"})

    assert received == [{"method": "turn/started", "params": {"threadId": "t1"}}]


async def test_failing_subscriber_does_not_break_others(companion: CompanionProcessManager) -> None:
    received: list[dict] = []

    def broken(message: dict) -> None:
        raise RuntimeError("subscriber bug")

    companion.subscribe(broken)
    companion.subscribe(received.append)

    await companion.request("notify", {})
    await _wait_for(lambda: bool(received))


async def test_server_request_is_declined(companion: CompanionProcessManager) -> None:
    received: list[dict] = []
    companion.subscribe(received.append)

    assert await companion.request("ask") == {"asked": True}
    await _wait_for(lambda: any(message.get("method") == "fake/reply" for message in received))

    methods = [message.get("method") for message in received]
    assert methods[0] == "item/approve"
    reply = next(message for message in received if message.get("method") == "fake/reply")
    assert reply["params"]["id"] == "srv-1"
    assert reply["params"]["error"]["code"] == METHOD_NOT_FOUND
    assert any("unexpected request from server: item/approve" in line for line in companion.get_log_lines())


# -- Exit and restart ----------------------------------------------------------


async def test_exit_rejects_pending_and_restarts(companion: CompanionProcessManager) -> None:
    first_pid = companion.get_status().pid

    with pytest.raises(CompanionExitedError):
        await companion.request("exit", {"code": 3})

    status = companion.get_status()
    assert status.state != CompanionState.READY
    assert status.last_error == "process exited (3)"
    assert any("process exit (3)" in line for line in companion.get_log_lines())
    assert any("restart scheduled in 50ms" in line for line in companion.get_log_lines())

    assert await companion.wait_until_ready(timeout=10)
    assert companion.get_status().pid != first_pid
    assert companion.restart_attempts == 0
    assert await companion.request("echo", {"again": True}) == {"again": True}


async def test_exit_rejects_every_pending_request(companion: CompanionProcessManager) -> None:
    pending = [asyncio.create_task(companion.request("slow", {"delay": 30})) for _ in range(3)]
    pending.append(asyncio.create_task(companion.request("exit", {"code": 3})))

    results = await asyncio.gather(*pending, return_exceptions=True)

    assert [type(result) for result in results] == [CompanionExitedError] * 4
    restarts = [line for line in companion.get_log_lines() if "restart scheduled" in line]
    assert len(restarts) == 1


async def test_handshake_failure(tmp_path: Path) -> None:
    manager = CompanionProcessManager(
        _spec(tmp_path), env={**os.environ, "FAKE_FAIL_INIT": "1"}, restart_base_delay=30
    )
    manager.start()
    try:
        await _wait_for(lambda: manager.get_status().restarting)
        status = manager.get_status()
        assert status.state == CompanionState.ERROR
        assert status.last_error == "init refused"
        assert not manager.is_ready()
        assert any("initialize error: init refused" in line for line in manager.get_log_lines())
    finally:
        await manager.stop()


async def test_spawn_failure(tmp_path: Path) -> None:
    manager = CompanionProcessManager(_spec(tmp_path, command=str(tmp_path / "missing-binary")), restart_base_delay=30)
    manager.start()
    try:
        await _wait_for(lambda: manager.get_status().restarting)
        status = manager.get_status()
        assert status.state == CompanionState.ERROR
        assert status.last_error is not None
        assert status.last_error.startswith("spawn failed:")
        assert manager.restart_attempts == 1
    finally:
        await manager.stop()


async def test_stop(companion: CompanionProcessManager) -> None:
    await companion.stop()

    status = companion.get_status()
    assert status.state == CompanionState.STOPPED
    assert not companion.is_ready()
    with pytest.raises(CompanionUnavailableError):
        await companion.request("echo")
