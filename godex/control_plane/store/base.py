"""Store interface for workspaces, runs, run events and thread annotations.

The store is the single source of truth for all entity state.  Two backends
implement this protocol (embedded SQL and a JSON document) and must return
identical results for every query: same ordering, same defaults, same
normalisation.  The contract test suite runs against both.

The only ordering-critical invariant is ``append_run_event``: sequence
numbers are assigned under the same serialisation point as the write, so no
two events of one run can share a ``seq`` and no number is skipped.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from godex.control_plane.models.enums import RunStream
from godex.control_plane.models.run import Run, RunCreate, RunEvent, RunPatch
from godex.control_plane.models.thread import ThreadMeta, ThreadMetaPatch, WorkspaceThread
from godex.control_plane.models.workspace import Workspace, WorkspacePatch


def now_iso() -> str:
    """UTC timestamp used for every persisted ``*_at`` / ``ts`` field."""
    return datetime.now(UTC).isoformat(timespec="microseconds")


@runtime_checkable
class Store(Protocol):
    """Async protocol shared by ``SqlStore`` and ``JsonStore``."""

    backend: str

    async def init(self) -> None:
        """Create the schema / data file and upgrade legacy shapes."""
        ...

    async def close(self) -> None: ...

    # -- Workspaces ------------------------------------------------------------

    async def list_workspaces(self) -> list[Workspace]:
        """All workspaces, newest first."""
        ...

    async def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    async def create_workspace(self, *, title: str, repo_path: str, workspace_id: str | None = None) -> Workspace: ...

    async def update_workspace(self, workspace_id: str, patch: WorkspacePatch) -> Workspace | None:
        """Apply the fields set on *patch*.  Returns ``None`` if missing."""
        ...

    async def delete_workspace(self, workspace_id: str) -> bool:
        """Delete a workspace with its runs, run events and thread links."""
        ...

    # -- Runs ------------------------------------------------------------------

    async def list_runs_by_workspace(self, workspace_id: str, limit: int = 10) -> list[Run]: ...

    async def get_run(self, run_id: str) -> Run | None: ...

    async def create_run(self, run: RunCreate) -> Run:
        """Insert a run in ``running`` status."""
        ...

    async def update_run(self, run_id: str, patch: RunPatch) -> Run | None: ...

    async def append_run_event(self, run_id: str, stream: RunStream, chunk: str, ts: str | None = None) -> RunEvent:
        """Persist a chunk and return it with its assigned ``seq``."""
        ...

    async def get_run_events(self, run_id: str, limit: int | None = None) -> list[RunEvent]:
        """The most recent *limit* events (all when ``None``), ascending by seq."""
        ...

    async def clear_runs_for_workspace(self, workspace_id: str) -> int:
        """Delete a workspace's runs and their events.  Returns runs removed."""
        ...

    async def mark_stale_runs(self) -> int:
        """Mark every ``running`` run as done with the stale exit code."""
        ...

    async def count_runs(self) -> int:
        """All runs, including those without a workspace."""
        ...

    # -- Threads ---------------------------------------------------------------

    async def list_thread_meta(self) -> list[ThreadMeta]: ...

    async def get_thread_meta(self, thread_id: str) -> ThreadMeta | None: ...

    async def upsert_thread_meta(self, thread_id: str, patch: ThreadMetaPatch) -> ThreadMeta: ...

    async def list_workspace_threads(self, workspace_id: str | None = None) -> list[WorkspaceThread]: ...

    async def attach_thread(self, workspace_id: str, thread_id: str) -> WorkspaceThread:
        """Link a thread to a workspace.  Re-attaching returns the existing link."""
        ...

    async def detach_thread(self, workspace_id: str, thread_id: str) -> bool: ...
