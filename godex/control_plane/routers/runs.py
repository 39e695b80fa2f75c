"""Run endpoints (RPC-style) and the live SSE stream."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, status
from sse_starlette.sse import EventSourceResponse

from godex.control_plane.deps import RunMgr, StoreDep
from godex.control_plane.execution.runner import RunManager
from godex.control_plane.managers import runs as manager
from godex.control_plane.models.api import RunDetailResponse
from godex.control_plane.models.enums import RunStatus, StreamEventType
from godex.control_plane.models.run import RunFinal, RunStreamEvent
from godex.control_plane.store.base import Store

router = APIRouter(prefix="/runs", tags=["runs"])

PING_INTERVAL = 15


@router.get("/{run_id}/get", response_model=RunDetailResponse)
async def get_run(run_id: str, store: StoreDep) -> RunDetailResponse:
    """Get a run with its most recent events."""
    try:
        return await manager.get_run_detail(store, run_id)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Run '{run_id}' not found.") from None


@router.get("/{run_id}/stream")
async def stream_run(run_id: str, store: StoreDep, runs: RunMgr) -> EventSourceResponse:
    """Replay persisted events, then follow the run live until ``final``."""
    if await store.get_run(run_id) is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Run '{run_id}' not found.")
    return EventSourceResponse(run_event_stream(store, runs, run_id), ping=PING_INTERVAL)


async def run_event_stream(
    store: Store,
    runs: RunManager,
    run_id: str,
    *,
    replay_limit: int = manager.DETAIL_EVENT_LIMIT,
) -> AsyncIterator[dict[str, str]]:
    """SSE messages for *run_id*.

    Subscribes before reading the run and its history so nothing emitted in
    between is lost; duplicates are dropped by ``seq``.  The subscription is
    only made once iteration starts, so a stream that is never consumed
    leaves no handler behind.
    """
    queue: asyncio.Queue[RunStreamEvent] = asyncio.Queue()
    unsubscribe = runs.subscribe(run_id, queue.put_nowait)
    try:
        run = await store.get_run(run_id)
        if run is None:
            return

        last_seq = 0
        for event in await store.get_run_events(run.id, replay_limit):
            last_seq = event.seq
            yield RunStreamEvent.for_chunk(event).to_sse()

        if run.status == RunStatus.DONE:
            final = RunFinal(run_id=run.id, ts=run.updated_at, exit_code=run.exit_code)
            yield RunStreamEvent.for_final(final).to_sse()
            return

        while True:
            live = await queue.get()
            if live.event_type == StreamEventType.FINAL:
                yield live.to_sse()
                return
            if live.chunk is None or live.chunk.seq <= last_seq:
                continue
            last_seq = live.chunk.seq
            yield live.to_sse()
    finally:
        unsubscribe()
