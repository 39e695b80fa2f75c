"""Tests for the workspace manager."""

from __future__ import annotations

import pytest

from godex.control_plane.execution.runner import RunManager
from godex.control_plane.managers import workspaces as manager
from godex.control_plane.managers.workspaces import (
    InvalidRepoPathError,
    NoTestCommandError,
    WorkspaceNotFoundError,
)
from godex.control_plane.models.api import WorkspaceCreate, WorkspaceUpdate
from godex.control_plane.models.enums import NotifyPolicy, RunType
from godex.control_plane.store.base import Store


async def test_create_workspace_defaults_title_to_path(store: Store, tmp_path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()

    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=f"  {repo}  ", title="  "))

    assert workspace.repo_path == str(repo.resolve())
    assert workspace.title == str(repo.resolve())
    assert workspace.notify_policy == NotifyPolicy.NEEDS_INPUT_FAILED


@pytest.mark.parametrize("repo_path", ["", "   ", "/definitely/not/here"])
async def test_create_workspace_rejects_bad_paths(store: Store, repo_path: str) -> None:
    with pytest.raises(InvalidRepoPathError):
        await manager.create_workspace(store, WorkspaceCreate(repo_path=repo_path))
    assert await store.list_workspaces() == []


async def test_create_workspace_rejects_files(store: Store, tmp_path) -> None:
    file_path = tmp_path / "README.md"
    file_path.write_text("hi")
    with pytest.raises(InvalidRepoPathError):
        await manager.create_workspace(store, WorkspaceCreate(repo_path=str(file_path)))


async def test_list_workspaces_reports_last_activity(store: Store, run_manager: RunManager, tmp_path) -> None:
    first = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path), title="First"))
    second = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path), title="Second"))
    run_id = await run_manager.start_external_run(
        run_type=RunType.CODEX_THREAD, command="codex app-server", cwd=str(tmp_path), workspace_id=first.id
    )
    await run_manager.finalize_external_run(run_id, 0)

    items = {item.id: item for item in await manager.list_workspaces(store)}

    run = await store.get_run(run_id)
    assert run is not None
    assert items[first.id].last_activity_at == run.updated_at
    assert items[second.id].last_activity_at is None


async def test_update_workspace(store: Store, tmp_path) -> None:
    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path), title="Repo"))

    updated = await manager.update_workspace(
        store,
        workspace.id,
        WorkspaceUpdate(title="   ", notify_policy="all", default_thread_id="t1", test_command_override="pnpm test"),
    )
    assert updated.title == "Repo"
    assert updated.notify_policy == NotifyPolicy.ALL
    assert updated.default_thread_id == "t1"
    assert updated.test_command_override == "pnpm test"

    cleared = await manager.update_workspace(store, workspace.id, WorkspaceUpdate(test_command_override=" "))
    assert cleared.test_command_override is None
    assert cleared.default_thread_id == "t1"


async def test_update_workspace_rejects_unknown_policy(store: Store, tmp_path) -> None:
    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path)))

    with pytest.raises(ValueError, match="invalid notify_policy"):
        await manager.update_workspace(store, workspace.id, WorkspaceUpdate(notify_policy="sometimes"))
    with pytest.raises(WorkspaceNotFoundError):
        await manager.update_workspace(store, "missing", WorkspaceUpdate(title="x"))


async def test_detach_default_thread_clears_default(store: Store, tmp_path) -> None:
    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path)))
    await manager.attach_thread(store, workspace.id, " t1 ")
    await manager.update_workspace(store, workspace.id, WorkspaceUpdate(default_thread_id="t1"))

    assert await manager.detach_thread(store, workspace.id, "t1") is True
    assert await manager.detach_thread(store, workspace.id, "t1") is False

    detail = await manager.get_workspace_detail(store, workspace.id)
    assert detail.workspace.default_thread_id is None
    assert detail.linked_thread_ids == []


async def test_attach_thread_requires_id(store: Store, tmp_path) -> None:
    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path)))
    with pytest.raises(ValueError, match="thread_id required"):
        await manager.attach_thread(store, workspace.id, "  ")


async def test_run_tests_without_command(store: Store, run_manager: RunManager, tmp_path) -> None:
    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path)))

    with pytest.raises(NoTestCommandError):
        await manager.run_tests(store, run_manager, workspace.id)
    with pytest.raises(NoTestCommandError):
        await manager.run_tests(store, run_manager, workspace.id, "make test")
    assert await store.list_runs_by_workspace(workspace.id) == []


async def test_send_message_requires_text(store: Store, run_manager: RunManager, tmp_path) -> None:
    workspace = await manager.create_workspace(store, WorkspaceCreate(repo_path=str(tmp_path)))
    with pytest.raises(ValueError, match="text required"):
        await manager.send_message(store, run_manager, workspace.id, "   ")


async def test_commands_on_missing_workspace(store: Store, run_manager: RunManager) -> None:
    with pytest.raises(WorkspaceNotFoundError):
        await manager.git_status(store, run_manager, "missing")
    with pytest.raises(WorkspaceNotFoundError):
        await manager.delete_workspace(store, "missing")
    with pytest.raises(WorkspaceNotFoundError):
        await manager.clear_runs(store, "missing")
