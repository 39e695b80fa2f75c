"""API request / response schemas for the HTTP routers.

These sit between HTTP and the managers.  Domain rows (``Workspace``,
``Run``, ...) are returned as-is where they already match the wire shape;
the schemas here cover inputs and composite responses.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from godex.control_plane.models.companion import CompanionStatus, SpawnSpec
from godex.control_plane.models.run import Run, RunEvent
from godex.control_plane.models.thread import ThreadSummary, WorkspaceThread
from godex.control_plane.models.workspace import Workspace

# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class WorkspaceCreate(BaseModel):
    repo_path: str
    title: str | None = None


class WorkspaceUpdate(BaseModel):
    """Partial update -- only fields explicitly set by the caller are applied."""

    title: str | None = None
    notify_policy: str | None = None
    """Checked against ``NotifyPolicy`` by the workspace manager."""
    default_thread_id: str | None = None
    test_command_override: str | None = None


class WorkspaceListItem(Workspace):
    last_activity_at: str | None = None


class WorkspaceDetail(BaseModel):
    workspace: Workspace
    runs: list[Run] = Field(default_factory=list)
    linked_thread_ids: list[str] = Field(default_factory=list)


class ClearRunsResponse(BaseModel):
    cleared: int


class ThreadAttach(BaseModel):
    thread_id: str


class ThreadDetachResponse(BaseModel):
    removed: bool


class ThreadLinkResponse(BaseModel):
    link: WorkspaceThread


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class MessageRequest(BaseModel):
    text: str


class GitDiffRequest(BaseModel):
    staged: bool = False


class RunTestsRequest(BaseModel):
    command: str | None = None


class RunStarted(BaseModel):
    run_id: str


class RunDetailResponse(BaseModel):
    run: Run
    events: list[RunEvent] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


class ThreadMessageRequest(BaseModel):
    text: str
    workspace_id: str | None = None


class ThreadMetaUpdate(BaseModel):
    title_override: str | None = None
    pinned: bool | None = None
    archived: bool | None = None


class ThreadListResponse(BaseModel):
    data: list[ThreadSummary] = Field(default_factory=list)
    next_cursor: str | None = None


class ThreadDetailResponse(BaseModel):
    thread: Any = None
    items: Any = None
    turns: Any = None
    has_more: Any = None


# ---------------------------------------------------------------------------
# Health / diagnostics
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str = "ok"
    pid: int
    uptime: float
    active_runs: int
    store_backend: str
    companion: CompanionStatus


class CommandProbe(BaseModel):
    ok: bool
    code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None


class CompanionDiagnostics(BaseModel):
    platform: str
    cwd: str
    spawn: SpawnSpec
    path: str
    which: str | None = None
    version: CommandProbe
    status: CompanionStatus
    logs: list[str] = Field(default_factory=list)
