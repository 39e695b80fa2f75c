"""HTTP-level tests for the control-plane API."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from godex.control_plane.app import create_app
from godex.control_plane.companion import CompanionRequestError, CompanionTimeoutError
from godex.control_plane.execution.runner import RunManager
from godex.control_plane.managers.threads import ThreadCatalog
from godex.control_plane.models.enums import RunType
from godex.control_plane.routers.diag import probe_command
from godex.control_plane.settings import GodexSettings
from godex.control_plane.store.base import Store

if TYPE_CHECKING:
    from .conftest import FakeCompanion


# -- Workspaces ----------------------------------------------------------------


async def test_workspace_crud(client: AsyncClient, tmp_path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()

    resp = await client.post("/api/workspaces/create", json={"repo_path": str(repo), "title": "Repo"})
    assert resp.status_code == 201
    workspace = resp.json()
    assert workspace["title"] == "Repo"
    assert workspace["status"] == "idle"
    assert workspace["notify_policy"] == "needs_input+failed"
    ws_id = workspace["id"]

    resp = await client.get("/api/workspaces/list")
    assert resp.status_code == 200
    assert [item["id"] for item in resp.json()] == [ws_id]
    assert resp.json()[0]["last_activity_at"] is None

    resp = await client.post(f"/api/workspaces/{ws_id}/update", json={"notify_policy": "all", "title": "Renamed"})
    assert resp.status_code == 200
    assert resp.json()["notify_policy"] == "all"
    assert resp.json()["title"] == "Renamed"

    resp = await client.post(f"/api/workspaces/{ws_id}/threads/attach", json={"thread_id": "t1"})
    assert resp.status_code == 200
    assert resp.json()["link"]["thread_id"] == "t1"

    resp = await client.get(f"/api/workspaces/{ws_id}/get")
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["workspace"]["id"] == ws_id
    assert detail["runs"] == []
    assert detail["linked_thread_ids"] == ["t1"]

    resp = await client.post(f"/api/workspaces/{ws_id}/threads/t1/detach")
    assert resp.json() == {"removed": True}

    resp = await client.post(f"/api/workspaces/{ws_id}/delete")
    assert resp.status_code == 204

    resp = await client.get(f"/api/workspaces/{ws_id}/get")
    assert resp.status_code == 404


async def test_workspace_validation_errors(client: AsyncClient, tmp_path) -> None:
    resp = await client.post("/api/workspaces/create", json={"repo_path": str(tmp_path / "missing")})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "repo_path must be an existing directory"

    resp = await client.post("/api/workspaces/create", json={"repo_path": str(tmp_path)})
    ws_id = resp.json()["id"]

    resp = await client.post(f"/api/workspaces/{ws_id}/update", json={"notify_policy": "loud"})
    assert resp.status_code == 400

    resp = await client.post(f"/api/workspaces/{ws_id}/test")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "no supported test command detected"

    resp = await client.post(f"/api/workspaces/{ws_id}/message", json={"text": "  "})
    assert resp.status_code == 400

    resp = await client.post("/api/workspaces/nope/git/status")
    assert resp.status_code == 404


async def test_workspace_command_creates_run(client: AsyncClient, run_manager: RunManager, tmp_path) -> None:
    resp = await client.post("/api/workspaces/create", json={"repo_path": str(tmp_path)})
    ws_id = resp.json()["id"]

    resp = await client.post(f"/api/workspaces/{ws_id}/git/diff", json={"staged": True})
    assert resp.status_code == 202
    run_id = resp.json()["run_id"]
    await run_manager.wait_idle(timeout=10)

    resp = await client.get(f"/api/runs/{run_id}/get")
    assert resp.status_code == 200
    run = resp.json()["run"]
    assert run["type"] == RunType.GIT_DIFF
    assert run["command"] == "git diff --staged"
    assert run["status"] == "done"
    assert run["workspace_id"] == ws_id

    resp = await client.post(f"/api/workspaces/{ws_id}/runs/clear")
    assert resp.json() == {"cleared": 1}


async def test_commands_rejected_during_shutdown(client: AsyncClient, run_manager: RunManager, tmp_path) -> None:
    resp = await client.post("/api/workspaces/create", json={"repo_path": str(tmp_path)})
    ws_id = resp.json()["id"]
    run_manager.begin_shutdown()

    resp = await client.post(f"/api/workspaces/{ws_id}/git/status")
    assert resp.status_code == 503


# -- Runs ----------------------------------------------------------------------


async def test_run_not_found(client: AsyncClient) -> None:
    assert (await client.get("/api/runs/missing/get")).status_code == 404
    assert (await client.get("/api/runs/missing/stream")).status_code == 404


# -- Threads -------------------------------------------------------------------


async def test_list_threads(client: AsyncClient, fake_companion: FakeCompanion) -> None:
    fake_companion.responses["thread/list"] = {"data": [{"id": "t1", "preview": "Hello"}], "nextCursor": "n"}

    resp = await client.get("/api/threads/list", params={"limit": 5})

    assert resp.status_code == 200
    body = resp.json()
    assert body["next_cursor"] == "n"
    assert body["data"][0]["thread_id"] == "t1"
    assert body["data"][0]["title"] == "Hello"
    assert fake_companion.calls == [("thread/list", {"limit": 5})]


async def test_list_threads_rejects_negative_offset(client: AsyncClient) -> None:
    resp = await client.get("/api/threads/list", params={"offset": -1})
    assert resp.status_code == 422


async def test_companion_not_ready(client: AsyncClient, fake_companion: FakeCompanion) -> None:
    fake_companion.ready = False
    fake_companion.log_lines = [f"line {index}" for index in range(80)]

    resp = await client.get("/api/threads/list")

    assert resp.status_code == 503
    detail = resp.json()["detail"]
    assert detail["error"] == "codex app-server not ready"
    assert detail["status"]["state"] == "error"
    assert len(detail["logs"]) == 50
    assert detail["logs"][-1] == "line 79"


async def test_companion_timeout(client: AsyncClient, fake_companion: FakeCompanion) -> None:
    fake_companion.responses["thread/read"] = CompanionTimeoutError("thread/read", 60)

    resp = await client.get("/api/threads/t1/get")

    assert resp.status_code == 504
    assert resp.json()["detail"] == {"error": "codex app-server request timeout: thread/read"}


async def test_companion_request_error(client: AsyncClient, fake_companion: FakeCompanion) -> None:
    fake_companion.responses["thread/list"] = CompanionRequestError("thread/list", -32000, "boom", {"hint": 1})

    resp = await client.get("/api/threads/list")

    assert resp.status_code == 502
    assert resp.json()["detail"] == {"error": "boom", "code": -32000, "data": {"hint": 1}}


async def test_thread_message(
    client: AsyncClient, fake_companion: FakeCompanion, run_manager: RunManager, store: Store, tmp_path
) -> None:
    fake_companion.responses["turn/start"] = {"turn": {"id": "u1"}}
    ws_id = (await client.post("/api/workspaces/create", json={"repo_path": str(tmp_path)})).json()["id"]

    resp = await client.post("/api/threads/t1/message", json={"text": "go", "workspace_id": ws_id})
    assert resp.status_code == 202
    run_id = resp.json()["run_id"]

    fake_companion.emit({"method": "turn/completed", "params": {"threadId": "t1", "turnId": "u1"}})
    await run_manager.wait_idle(timeout=10)

    run = await store.get_run(run_id)
    assert run is not None
    assert run.workspace_id == ws_id
    assert run.exit_code == 0
    assert [link.thread_id for link in await store.list_workspace_threads(ws_id)] == ["t1"]


async def test_thread_message_errors(client: AsyncClient, fake_companion: FakeCompanion) -> None:
    resp = await client.post("/api/threads/t1/message", json={"text": "go", "workspace_id": "missing"})
    assert resp.status_code == 404

    resp = await client.post("/api/threads/t1/message", json={"text": " "})
    assert resp.status_code == 400

    fake_companion.ready = False
    resp = await client.post("/api/threads/t1/message", json={"text": "go"})
    assert resp.status_code == 503


async def test_thread_meta_update(client: AsyncClient) -> None:
    resp = await client.post("/api/threads/t1/meta/update", json={"title_override": "Mine", "pinned": True})

    assert resp.status_code == 200
    assert resp.json()["title_override"] == "Mine"
    assert resp.json()["pinned"] is True
    assert resp.json()["archived"] is False


# -- Health / diag / auth ------------------------------------------------------


async def test_health(client: AsyncClient, store: Store) -> None:
    resp = await client.get("/api/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["active_runs"] == 0
    assert body["store_backend"] == store.backend
    assert body["companion"]["state"] == "ready"


async def test_diag_companion(client: AsyncClient, fake_companion: FakeCompanion) -> None:
    fake_companion.log_lines = ["spawn: codex app-server"]

    resp = await client.get("/api/diag/companion")

    assert resp.status_code == 200
    body = resp.json()
    assert body["spawn"]["command"] == "codex"
    assert body["platform"] == sys.platform
    assert body["logs"] == ["spawn: codex app-server"]
    assert "ok" in body["version"]


async def test_probe_command() -> None:
    ok = await probe_command([sys.executable, "--version"])
    assert ok.ok is True
    assert "Python" in ok.stdout + ok.stderr

    missing = await probe_command(["/definitely/not/a/binary"])
    assert missing.ok is False
    assert missing.error


@pytest.fixture
async def secured_client(
    tmp_path, store: Store, run_manager: RunManager, fake_companion: FakeCompanion, catalog: ThreadCatalog
) -> AsyncIterator[AsyncClient]:
    app = create_app(GodexSettings(data_dir=str(tmp_path / "data"), auth_token="s3cret", _env_file=None))
    app.state.store = store
    app.state.run_manager = run_manager
    app.state.companion = fake_companion
    app.state.thread_catalog = catalog
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def test_auth_required(secured_client: AsyncClient) -> None:
    resp = await secured_client.get("/api/health")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"

    resp = await secured_client.get("/api/health", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401

    resp = await secured_client.get("/api/health", headers={"Authorization": "Bearer s3cret"})
    assert resp.status_code == 200

    resp = await secured_client.get("/api/health", params={"token": "s3cret"})
    assert resp.status_code == 200


async def test_missing_component_is_503(tmp_path) -> None:
    app = create_app(GodexSettings(data_dir=str(tmp_path / "data"), auth_token=None, _env_file=None))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        resp = await http.get("/api/workspaces/list")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "store not initialised."
