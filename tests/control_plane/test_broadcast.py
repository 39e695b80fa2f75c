"""Unit tests for the run broadcaster and the in-process run registry."""

from __future__ import annotations

import pytest

from godex.control_plane.broadcast import RunBroadcaster
from godex.control_plane.context import RunContext
from godex.control_plane.models.enums import RunStream, RunType
from godex.control_plane.models.run import RunEvent, RunFinal, RunStreamEvent
from godex.control_plane.registry import RunRegistry, ShuttingDownError


def _chunk(run_id: str, seq: int) -> RunStreamEvent:
    return RunStreamEvent.for_chunk(RunEvent(run_id=run_id, seq=seq, ts="t", stream=RunStream.STDOUT, chunk="x"))


# -- Broadcaster ---------------------------------------------------------------


def test_broadcast_reaches_only_matching_run() -> None:
    broadcaster = RunBroadcaster()
    first: list[RunStreamEvent] = []
    second: list[RunStreamEvent] = []
    broadcaster.subscribe("r1", first.append)
    broadcaster.subscribe("r2", second.append)

    broadcaster.broadcast(_chunk("r1", 1))

    assert [event.chunk.seq for event in first if event.chunk] == [1]
    assert second == []


def test_unsubscribe_is_idempotent() -> None:
    broadcaster = RunBroadcaster()
    received: list[RunStreamEvent] = []
    unsubscribe = broadcaster.subscribe("r1", received.append)

    unsubscribe()
    unsubscribe()
    broadcaster.broadcast(_chunk("r1", 1))

    assert received == []
    assert broadcaster.subscriber_count("r1") == 0


def test_same_handler_twice_and_self_unsubscribe() -> None:
    broadcaster = RunBroadcaster()
    received: list[str] = []
    unsubscribers = []

    def once(event: RunStreamEvent) -> None:
        received.append("once")
        unsubscribers[0]()

    unsubscribers.append(broadcaster.subscribe("r1", once))
    broadcaster.subscribe("r1", lambda event: received.append("always"))
    broadcaster.subscribe("r1", lambda event: received.append("always"))

    broadcaster.broadcast(_chunk("r1", 1))
    broadcaster.broadcast(_chunk("r1", 2))

    assert received == ["once", "always", "always", "always", "always"]


def test_failing_handler_does_not_stop_others() -> None:
    broadcaster = RunBroadcaster()
    received: list[RunStreamEvent] = []

    def broken(event: RunStreamEvent) -> None:
        raise RuntimeError("bad subscriber")

    broadcaster.subscribe("r1", broken)
    broadcaster.subscribe("r1", received.append)

    final = RunStreamEvent.for_final(RunFinal(run_id="r1", ts="t", exit_code=0))
    broadcaster.broadcast(final)

    assert received == [final]


def test_to_sse() -> None:
    message = _chunk("r1", 7).to_sse()
    assert message["event"] == "chunk"
    assert message["id"] == "7"

    final = RunStreamEvent.for_final(RunFinal(run_id="r1", ts="t", exit_code=None)).to_sse()
    assert final == {"event": "final", "data": '{"run_id":"r1","ts":"t","exit_code":null}'}


# -- Registry ------------------------------------------------------------------


async def test_registry_drain() -> None:
    registry = RunRegistry()
    assert await registry.wait_until_drained(timeout=0.01) is True

    registry.register(RunContext(run_id="r1", run_type=RunType.TEST, workspace_id="w1"))
    registry.register(RunContext(run_id="r2", run_type=RunType.MESSAGE, workspace_id="w2"))
    assert registry.active_count == 2
    assert sorted(registry.active_ids()) == ["r1", "r2"]
    assert registry.get("r2").tracker.conversational is True
    assert await registry.wait_until_drained(timeout=0.01) is False

    registry.unregister("r1")
    registry.unregister("r2")
    assert await registry.wait_until_drained(timeout=0.01) is True


async def test_registry_refuses_during_shutdown() -> None:
    registry = RunRegistry()
    registry.begin_shutdown()

    assert registry.is_shutting_down
    with pytest.raises(ShuttingDownError):
        registry.register(RunContext(run_id="r1", run_type=RunType.TEST))
