"""Data models for the control plane."""

from godex.control_plane.models.companion import ClientInfo, CompanionStatus, SpawnSpec
from godex.control_plane.models.enums import (
    CompanionState,
    NotifyPolicy,
    RunStatus,
    RunStream,
    RunType,
    StreamEventType,
    WorkspaceStatus,
)
from godex.control_plane.models.run import Run, RunCreate, RunEvent, RunFinal, RunPatch, RunStreamEvent
from godex.control_plane.models.thread import ThreadMeta, ThreadMetaPatch, ThreadSummary, WorkspaceThread
from godex.control_plane.models.workspace import Workspace, WorkspacePatch

__all__ = [
    # Companion
    "ClientInfo",
    "CompanionState",
    "CompanionStatus",
    # Enums
    "NotifyPolicy",
    # Runs
    "Run",
    "RunCreate",
    "RunEvent",
    "RunFinal",
    "RunPatch",
    "RunStatus",
    "RunStream",
    "RunStreamEvent",
    "RunType",
    "SpawnSpec",
    "StreamEventType",
    # Threads
    "ThreadMeta",
    "ThreadMetaPatch",
    "ThreadSummary",
    # Workspaces
    "Workspace",
    "WorkspacePatch",
    "WorkspaceStatus",
    "WorkspaceThread",
]
