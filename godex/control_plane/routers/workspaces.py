"""Workspace endpoints (RPC-style).

All write operations use POST; reads use GET.  Thin HTTP adapter --
delegates to the workspace manager.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from godex.control_plane.deps import RunMgr, SettingsDep, StoreDep
from godex.control_plane.managers import workspaces as manager
from godex.control_plane.models.api import (
    ClearRunsResponse,
    GitDiffRequest,
    MessageRequest,
    RunStarted,
    RunTestsRequest,
    ThreadAttach,
    ThreadDetachResponse,
    ThreadLinkResponse,
    WorkspaceCreate,
    WorkspaceDetail,
    WorkspaceListItem,
    WorkspaceUpdate,
)
from godex.control_plane.models.workspace import Workspace
from godex.control_plane.registry import ShuttingDownError

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


def _not_found(workspace_id: str) -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Workspace '{workspace_id}' not found.")


def _shutting_down() -> HTTPException:
    return HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Server is shutting down.")


# -- CRUD ----------------------------------------------------------------------


@router.post("/create", response_model=Workspace, status_code=status.HTTP_201_CREATED)
async def create_workspace(body: WorkspaceCreate, store: StoreDep) -> Workspace:
    """Create a workspace for an existing local directory."""
    try:
        return await manager.create_workspace(store, body)
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None


@router.get("/list", response_model=list[WorkspaceListItem])
async def list_workspaces(store: StoreDep) -> list[WorkspaceListItem]:
    """List all workspaces, newest first."""
    return await manager.list_workspaces(store)


@router.get("/{workspace_id}/get", response_model=WorkspaceDetail)
async def get_workspace(workspace_id: str, store: StoreDep) -> WorkspaceDetail:
    """Get a workspace with its recent runs and linked threads."""
    try:
        return await manager.get_workspace_detail(store, workspace_id)
    except LookupError:
        raise _not_found(workspace_id) from None


@router.post("/{workspace_id}/update", response_model=Workspace)
async def update_workspace(workspace_id: str, body: WorkspaceUpdate, store: StoreDep) -> Workspace:
    """Partially update a workspace."""
    try:
        return await manager.update_workspace(store, workspace_id, body)
    except LookupError:
        raise _not_found(workspace_id) from None
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None


@router.post("/{workspace_id}/delete", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workspace(workspace_id: str, store: StoreDep) -> None:
    """Delete a workspace with its runs and thread links."""
    try:
        await manager.delete_workspace(store, workspace_id)
    except LookupError:
        raise _not_found(workspace_id) from None


@router.post("/{workspace_id}/runs/clear", response_model=ClearRunsResponse)
async def clear_runs(workspace_id: str, store: StoreDep) -> ClearRunsResponse:
    try:
        cleared = await manager.clear_runs(store, workspace_id)
    except LookupError:
        raise _not_found(workspace_id) from None
    return ClearRunsResponse(cleared=cleared)


# -- Thread links --------------------------------------------------------------


@router.post("/{workspace_id}/threads/attach", response_model=ThreadLinkResponse)
async def attach_thread(workspace_id: str, body: ThreadAttach, store: StoreDep) -> ThreadLinkResponse:
    try:
        link = await manager.attach_thread(store, workspace_id, body.thread_id)
    except LookupError:
        raise _not_found(workspace_id) from None
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
    return ThreadLinkResponse(link=link)


@router.post("/{workspace_id}/threads/{thread_id}/detach", response_model=ThreadDetachResponse)
async def detach_thread(workspace_id: str, thread_id: str, store: StoreDep) -> ThreadDetachResponse:
    try:
        removed = await manager.detach_thread(store, workspace_id, thread_id)
    except LookupError:
        raise _not_found(workspace_id) from None
    return ThreadDetachResponse(removed=removed)


# -- Commands ------------------------------------------------------------------


@router.post("/{workspace_id}/message", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    workspace_id: str,
    body: MessageRequest,
    store: StoreDep,
    runs: RunMgr,
    settings: SettingsDep,
) -> RunStarted:
    """Run the agent CLI with *text* in the workspace."""
    try:
        run_id = await manager.send_message(
            store,
            runs,
            workspace_id,
            body.text,
            codex_bin=settings.codex_bin,
            full_access=settings.codex_full_access,
        )
    except LookupError:
        raise _not_found(workspace_id) from None
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
    except ShuttingDownError:
        raise _shutting_down() from None
    return RunStarted(run_id=run_id)


@router.post("/{workspace_id}/git/status", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def git_status(workspace_id: str, store: StoreDep, runs: RunMgr) -> RunStarted:
    try:
        run_id = await manager.git_status(store, runs, workspace_id)
    except LookupError:
        raise _not_found(workspace_id) from None
    except ShuttingDownError:
        raise _shutting_down() from None
    return RunStarted(run_id=run_id)


@router.post("/{workspace_id}/git/diff", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def git_diff(workspace_id: str, store: StoreDep, runs: RunMgr, body: GitDiffRequest | None = None) -> RunStarted:
    staged = body.staged if body is not None else False
    try:
        run_id = await manager.git_diff(store, runs, workspace_id, staged=staged)
    except LookupError:
        raise _not_found(workspace_id) from None
    except ShuttingDownError:
        raise _shutting_down() from None
    return RunStarted(run_id=run_id)


@router.post("/{workspace_id}/test", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def run_tests(
    workspace_id: str,
    store: StoreDep,
    runs: RunMgr,
    body: RunTestsRequest | None = None,
) -> RunStarted:
    """Run the requested, overridden or detected test command."""
    command = body.command if body is not None else None
    try:
        run_id = await manager.run_tests(store, runs, workspace_id, command)
    except LookupError:
        raise _not_found(workspace_id) from None
    except ValueError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
    except ShuttingDownError:
        raise _shutting_down() from None
    return RunStarted(run_id=run_id)
