"""Workspace operations.

Encapsulates workspace CRUD, thread links and the commands a workspace can
launch (agent message, git status/diff, tests).  Launching goes through the
run manager; these functions only resolve what to run and where.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from godex.control_plane.execution.commands import (
    CommandSpec,
    agent_message_command,
    git_diff_command,
    git_status_command,
    resolve_test_command,
)
from godex.control_plane.execution.runner import RunStartRequest
from godex.control_plane.models.api import WorkspaceCreate, WorkspaceDetail, WorkspaceListItem, WorkspaceUpdate
from godex.control_plane.models.enums import NotifyPolicy, RunType
from godex.control_plane.models.thread import WorkspaceThread
from godex.control_plane.models.workspace import Workspace, WorkspacePatch

if TYPE_CHECKING:
    from godex.control_plane.execution.runner import RunManager
    from godex.control_plane.store.base import Store


class WorkspaceNotFoundError(LookupError):
    """Raised when a workspace is not found."""


class InvalidRepoPathError(ValueError):
    """Raised when a repo path is empty or not an existing directory."""


class NoTestCommandError(ValueError):
    """Raised when no supported test command is configured or detected."""


# -- CRUD ----------------------------------------------------------------------


async def create_workspace(store: Store, body: WorkspaceCreate) -> Workspace:
    """Create a workspace for an existing directory.  Title defaults to the path."""
    raw_path = body.repo_path.strip()
    if not raw_path:
        msg = "repo_path required"
        raise InvalidRepoPathError(msg)
    repo_path = Path(raw_path).expanduser().resolve()
    if not repo_path.is_dir():
        msg = "repo_path must be an existing directory"
        raise InvalidRepoPathError(msg)
    title = (body.title or "").strip() or str(repo_path)
    return await store.create_workspace(title=title, repo_path=str(repo_path))


async def list_workspaces(store: Store) -> list[WorkspaceListItem]:
    """All workspaces, newest first, with the time of their latest run."""
    items = []
    for workspace in await store.list_workspaces():
        runs = await store.list_runs_by_workspace(workspace.id, limit=1)
        last_activity = (runs[0].updated_at or runs[0].created_at) if runs else None
        items.append(WorkspaceListItem(**workspace.model_dump(), last_activity_at=last_activity))
    return items


async def get_workspace(store: Store, workspace_id: str) -> Workspace:
    """Get a workspace by ID.  Raises ``WorkspaceNotFoundError`` if missing."""
    workspace = await store.get_workspace(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)
    return workspace


async def get_workspace_detail(store: Store, workspace_id: str, *, run_limit: int = 10) -> WorkspaceDetail:
    workspace = await get_workspace(store, workspace_id)
    runs = await store.list_runs_by_workspace(workspace_id, limit=run_limit)
    links = await store.list_workspace_threads(workspace_id)
    return WorkspaceDetail(workspace=workspace, runs=runs, linked_thread_ids=[link.thread_id for link in links])


async def update_workspace(store: Store, workspace_id: str, body: WorkspaceUpdate) -> Workspace:
    """Partially update a workspace.

    Blank titles are ignored; blank ``default_thread_id`` and
    ``test_command_override`` clear the field.  Raises ``ValueError`` for an
    unknown notify policy.
    """
    await get_workspace(store, workspace_id)
    fields = body.model_fields_set
    patch = WorkspacePatch()

    if "title" in fields and body.title is not None and body.title.strip():
        patch.title = body.title.strip()

    if "notify_policy" in fields:
        try:
            patch.notify_policy = NotifyPolicy(body.notify_policy)
        except ValueError:
            msg = "invalid notify_policy"
            raise ValueError(msg) from None

    if "default_thread_id" in fields:
        patch.default_thread_id = _blank_to_none(body.default_thread_id)

    if "test_command_override" in fields:
        patch.test_command_override = _blank_to_none(body.test_command_override)

    updated = await store.update_workspace(workspace_id, patch)
    if updated is None:
        raise WorkspaceNotFoundError(workspace_id)
    return updated


async def delete_workspace(store: Store, workspace_id: str) -> None:
    """Delete a workspace with its runs and links.  Raises if missing."""
    if not await store.delete_workspace(workspace_id):
        raise WorkspaceNotFoundError(workspace_id)


async def clear_runs(store: Store, workspace_id: str) -> int:
    await get_workspace(store, workspace_id)
    return await store.clear_runs_for_workspace(workspace_id)


# -- Thread links --------------------------------------------------------------


async def attach_thread(store: Store, workspace_id: str, thread_id: str) -> WorkspaceThread:
    await get_workspace(store, workspace_id)
    thread_id = thread_id.strip()
    if not thread_id:
        msg = "thread_id required"
        raise ValueError(msg)
    return await store.attach_thread(workspace_id, thread_id)


async def detach_thread(store: Store, workspace_id: str, thread_id: str) -> bool:
    """Remove a link.  Detaching the default thread clears the default."""
    workspace = await get_workspace(store, workspace_id)
    removed = await store.detach_thread(workspace_id, thread_id)
    if workspace.default_thread_id == thread_id:
        await store.update_workspace(workspace_id, WorkspacePatch(default_thread_id=None))
    return removed


# -- Commands ------------------------------------------------------------------


async def send_message(
    store: Store,
    runs: RunManager,
    workspace_id: str,
    text: str,
    *,
    codex_bin: str = "codex",
    full_access: bool = False,
) -> str:
    """Run the agent CLI non-interactively in the workspace.  Returns the run id."""
    workspace = await get_workspace(store, workspace_id)
    prompt = text.strip()
    if not prompt:
        msg = "text required"
        raise ValueError(msg)
    spec = agent_message_command(prompt, codex_bin=codex_bin, full_access=full_access)
    return await _start(runs, workspace, RunType.MESSAGE, spec)


async def git_status(store: Store, runs: RunManager, workspace_id: str) -> str:
    workspace = await get_workspace(store, workspace_id)
    return await _start(runs, workspace, RunType.GIT_STATUS, git_status_command())


async def git_diff(store: Store, runs: RunManager, workspace_id: str, *, staged: bool = False) -> str:
    workspace = await get_workspace(store, workspace_id)
    return await _start(runs, workspace, RunType.GIT_DIFF, git_diff_command(staged=staged))


async def run_tests(store: Store, runs: RunManager, workspace_id: str, command: str | None = None) -> str:
    """Run the requested, overridden or detected test command."""
    workspace = await get_workspace(store, workspace_id)
    spec = resolve_test_command(command, workspace.test_command_override, workspace.repo_path)
    if spec is None:
        msg = "no supported test command detected"
        raise NoTestCommandError(msg)
    return await _start(runs, workspace, RunType.TEST, spec)


async def _start(runs: RunManager, workspace: Workspace, run_type: str, spec: CommandSpec) -> str:
    return await runs.start_run(
        RunStartRequest(
            type=run_type,
            command=spec.command,
            args=list(spec.args),
            cwd=workspace.repo_path,
            workspace_id=workspace.id,
        )
    )


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None
