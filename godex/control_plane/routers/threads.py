"""Thread endpoints (RPC-style).

Threads are owned by the companion process.  Companion failures map to:
not ready / exited -> 503 (with status and recent log lines), request
timeout -> 504, remote error -> 502.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from godex.control_plane.companion import (
    CompanionError,
    CompanionProcessManager,
    CompanionRequestError,
    CompanionTimeoutError,
)
from godex.control_plane.deps import Companion, RunMgr, StoreDep, Threads
from godex.control_plane.execution.turns import start_thread_turn
from godex.control_plane.managers import workspaces as workspace_manager
from godex.control_plane.managers.threads import DEFAULT_LIMIT, MAX_LIMIT
from godex.control_plane.models.api import (
    RunStarted,
    ThreadDetailResponse,
    ThreadListResponse,
    ThreadMessageRequest,
    ThreadMetaUpdate,
)
from godex.control_plane.models.thread import ThreadMeta
from godex.control_plane.registry import ShuttingDownError

router = APIRouter(prefix="/threads", tags=["threads"])

ERROR_LOG_LINES = 50


def companion_http_error(exc: CompanionError, companion: CompanionProcessManager) -> HTTPException:
    """Translate a companion failure into an HTTP error."""
    if isinstance(exc, CompanionTimeoutError):
        return HTTPException(status.HTTP_504_GATEWAY_TIMEOUT, detail={"error": str(exc)})
    if isinstance(exc, CompanionRequestError):
        return HTTPException(
            status.HTTP_502_BAD_GATEWAY,
            detail={"error": exc.message, "code": exc.code, "data": exc.data},
        )
    return HTTPException(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": str(exc),
            "status": companion.get_status().model_dump(mode="json"),
            "logs": companion.get_log_lines()[-ERROR_LOG_LINES:],
        },
    )


@router.get("/list", response_model=ThreadListResponse)
async def list_threads(
    catalog: Threads,
    companion: Companion,
    limit: int = Query(DEFAULT_LIMIT, description=f"Page size, clamped to 1..{MAX_LIMIT}."),
    offset: int = Query(0, ge=0),
    cursor: str | None = Query(None),
    q: str | None = Query(None, description="Search text (preview / title)."),
    include_archived: bool = Query(False),
) -> ThreadListResponse:
    try:
        return await catalog.list_threads(
            limit=limit,
            offset=offset,
            cursor=cursor,
            query=q,
            include_archived=include_archived,
        )
    except CompanionError as exc:
        raise companion_http_error(exc, companion) from None


@router.get("/{thread_id}/get", response_model=ThreadDetailResponse)
async def get_thread(thread_id: str, catalog: Threads, companion: Companion) -> ThreadDetailResponse:
    try:
        return await catalog.read_thread(thread_id)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Thread '{thread_id}' not found.") from None
    except CompanionError as exc:
        raise companion_http_error(exc, companion) from None


@router.post("/{thread_id}/message", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def send_thread_message(
    thread_id: str,
    body: ThreadMessageRequest,
    store: StoreDep,
    runs: RunMgr,
    companion: Companion,
) -> RunStarted:
    """Start a turn on the thread; its output is recorded as a run."""
    workspace_id = (body.workspace_id or "").strip() or None
    if workspace_id is not None:
        try:
            await workspace_manager.get_workspace(store, workspace_id)
        except LookupError:
            raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Workspace '{workspace_id}' not found.") from None
    try:
        run_id = await start_thread_turn(companion, runs, store, thread_id, body.text, workspace_id=workspace_id)
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
    except ShuttingDownError:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Server is shutting down.") from None
    except CompanionError as exc:
        raise companion_http_error(exc, companion) from None
    return RunStarted(run_id=run_id)


@router.post("/{thread_id}/meta/update", response_model=ThreadMeta)
async def update_thread_meta(thread_id: str, body: ThreadMetaUpdate, catalog: Threads) -> ThreadMeta:
    """Set a local title override, pin or archive flag."""
    try:
        return await catalog.update_meta(thread_id, body)
    except LookupError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Thread '{thread_id}' not found.") from None
