"""Run queries."""

from __future__ import annotations

from typing import TYPE_CHECKING

from godex.control_plane.models.api import RunDetailResponse

if TYPE_CHECKING:
    from godex.control_plane.models.run import Run
    from godex.control_plane.store.base import Store

DETAIL_EVENT_LIMIT = 500
"""Most recent events returned with a run (and replayed on stream connect)."""


class RunNotFoundError(LookupError):
    """Raised when a run is not found."""


async def get_run(store: Store, run_id: str) -> Run:
    run = await store.get_run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


async def get_run_detail(store: Store, run_id: str, *, event_limit: int = DETAIL_EVENT_LIMIT) -> RunDetailResponse:
    """A run with its most recent events in ``seq`` order."""
    run = await get_run(store, run_id)
    events = await store.get_run_events(run_id, event_limit)
    return RunDetailResponse(run=run, events=events)
