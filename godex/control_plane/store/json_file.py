"""JSON document store.

Stores all state in a single document::

    {data_dir}/data.json

The document is loaded once at ``init`` and kept in memory; every mutation
is applied under one ``asyncio.Lock`` and written through before the lock is
released.  Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.

Writes are atomic: data is written to a temporary file in the same directory,
then renamed to the target path.  This prevents corrupt reads if the process
crashes mid-write.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
import uuid
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger

from godex.control_plane.models.enums import (
    DEFAULT_NOTIFY_POLICY,
    STALE_RUN_EXIT_CODE,
    RunStatus,
    RunStream,
    WorkspaceStatus,
)
from godex.control_plane.models.run import Run, RunCreate, RunEvent, RunPatch
from godex.control_plane.models.thread import ThreadMeta, ThreadMetaPatch, WorkspaceThread
from godex.control_plane.models.workspace import Workspace, WorkspacePatch
from godex.control_plane.store.base import now_iso
from godex.control_plane.store.migrate import CURRENT_KEYS, empty_document, is_legacy, migrate_legacy_data

DATA_FILENAME = "data.json"


class JsonStore:
    """JSON-file implementation of the ``Store`` protocol."""

    backend = "json"

    def __init__(self, data_dir: str | Path) -> None:
        self._path = Path(data_dir) / DATA_FILENAME
        self._data: dict[str, Any] = empty_document()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # -- Lifecycle -------------------------------------------------------------

    async def init(self) -> None:
        async with self._lock:
            raw = await to_thread.run_sync(partial(_read_document, self._path))
            if raw is None:
                self._data = empty_document()
                await self._save()
                logger.info("JSON store created at {}", self._path)
                return

            if is_legacy(raw) or any(key not in raw for key in CURRENT_KEYS):
                self._data = migrate_legacy_data(raw)
                await self._save()
                logger.info("JSON store at {} upgraded from legacy shape", self._path)
            else:
                self._data = raw
            logger.info("JSON store ready at {}", self._path)

    async def close(self) -> None:
        return None

    async def _save(self) -> None:
        """Write the in-memory document.  Callers hold ``self._lock``."""
        payload = json.dumps(self._data, indent=2)
        await to_thread.run_sync(partial(_atomic_write, self._path, payload))

    # -- Workspaces ------------------------------------------------------------

    async def list_workspaces(self) -> list[Workspace]:
        rows = sorted(self._data["workspaces"], key=_created_key, reverse=True)
        return [Workspace.model_validate(row) for row in rows]

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        row = self._find(self._data["workspaces"], "id", workspace_id)
        return Workspace.model_validate(row) if row is not None else None

    async def create_workspace(self, *, title: str, repo_path: str, workspace_id: str | None = None) -> Workspace:
        ts = now_iso()
        row = {
            "id": workspace_id or str(uuid.uuid4()),
            "title": title,
            "repo_path": repo_path,
            "status": WorkspaceStatus.IDLE.value,
            "notify_policy": DEFAULT_NOTIFY_POLICY.value,
            "default_thread_id": None,
            "test_command_override": None,
            "created_at": ts,
            "updated_at": ts,
        }
        async with self._lock:
            self._data["workspaces"].append(row)
            await self._save()
        return Workspace.model_validate(row)

    async def update_workspace(self, workspace_id: str, patch: WorkspacePatch) -> Workspace | None:
        async with self._lock:
            row = self._find(self._data["workspaces"], "id", workspace_id)
            if row is None:
                return None
            row.update(patch.model_dump(exclude_unset=True, mode="json"))
            row["updated_at"] = now_iso()
            await self._save()
            return Workspace.model_validate(row)

    async def delete_workspace(self, workspace_id: str) -> bool:
        async with self._lock:
            row = self._find(self._data["workspaces"], "id", workspace_id)
            if row is None:
                return False
            self._delete_runs(workspace_id)
            self._data["workspace_threads"] = [
                link for link in self._data["workspace_threads"] if link["workspace_id"] != workspace_id
            ]
            self._data["workspaces"].remove(row)
            await self._save()
            return True

    # -- Runs ------------------------------------------------------------------

    async def list_runs_by_workspace(self, workspace_id: str, limit: int = 10) -> list[Run]:
        rows = [run for run in self._data["runs"] if run.get("workspace_id") == workspace_id]
        rows.sort(key=_created_key, reverse=True)
        return [Run.model_validate(row) for row in rows[: max(limit, 0)]]

    async def get_run(self, run_id: str) -> Run | None:
        row = self._find(self._data["runs"], "id", run_id)
        return Run.model_validate(row) if row is not None else None

    async def create_run(self, run: RunCreate) -> Run:
        ts = now_iso()
        row = {
            **run.model_dump(),
            "status": RunStatus.RUNNING.value,
            "exit_code": None,
            "created_at": ts,
            "updated_at": ts,
            "last_snippet": None,
        }
        async with self._lock:
            self._data["runs"].append(row)
            await self._save()
        return Run.model_validate(row)

    async def update_run(self, run_id: str, patch: RunPatch) -> Run | None:
        async with self._lock:
            row = self._find(self._data["runs"], "id", run_id)
            if row is None:
                return None
            row.update(patch.model_dump(exclude_unset=True, mode="json"))
            row["updated_at"] = now_iso()
            await self._save()
            return Run.model_validate(row)

    async def append_run_event(self, run_id: str, stream: RunStream, chunk: str, ts: str | None = None) -> RunEvent:
        async with self._lock:
            events = self._data["run_events"].setdefault(run_id, [])
            seq = max((event["seq"] for event in events), default=0) + 1
            row = {
                "run_id": run_id,
                "seq": seq,
                "ts": ts or now_iso(),
                "stream": RunStream(stream).value,
                "chunk": chunk,
            }
            events.append(row)
            await self._save()
        return RunEvent.model_validate(row)

    async def get_run_events(self, run_id: str, limit: int | None = None) -> list[RunEvent]:
        if limit is not None and limit <= 0:
            return []
        events = sorted(self._data["run_events"].get(run_id, []), key=lambda event: event["seq"])
        if limit is not None:
            events = events[-limit:]
        return [RunEvent.model_validate(event) for event in events]

    async def clear_runs_for_workspace(self, workspace_id: str) -> int:
        async with self._lock:
            count = self._delete_runs(workspace_id)
            if count:
                await self._save()
            return count

    async def count_runs(self) -> int:
        return len(self._data["runs"])

    async def mark_stale_runs(self) -> int:
        async with self._lock:
            ts = now_iso()
            count = 0
            for run in self._data["runs"]:
                if run.get("status") == RunStatus.RUNNING.value:
                    run["status"] = RunStatus.DONE.value
                    run["exit_code"] = STALE_RUN_EXIT_CODE
                    run["updated_at"] = ts
                    count += 1
            if count:
                await self._save()
            return count

    def _delete_runs(self, workspace_id: str) -> int:
        run_ids = {run["id"] for run in self._data["runs"] if run.get("workspace_id") == workspace_id}
        if not run_ids:
            return 0
        self._data["runs"] = [run for run in self._data["runs"] if run["id"] not in run_ids]
        for run_id in run_ids:
            self._data["run_events"].pop(run_id, None)
        return len(run_ids)

    # -- Threads ---------------------------------------------------------------

    async def list_thread_meta(self) -> list[ThreadMeta]:
        rows = sorted(self._data["thread_meta"], key=lambda meta: meta["thread_id"])
        return [ThreadMeta.model_validate(row) for row in rows]

    async def get_thread_meta(self, thread_id: str) -> ThreadMeta | None:
        row = self._find(self._data["thread_meta"], "thread_id", thread_id)
        return ThreadMeta.model_validate(row) if row is not None else None

    async def upsert_thread_meta(self, thread_id: str, patch: ThreadMetaPatch) -> ThreadMeta:
        async with self._lock:
            row = self._find(self._data["thread_meta"], "thread_id", thread_id)
            if row is None:
                row = {
                    "thread_id": thread_id,
                    "title_override": None,
                    "last_seen_at": None,
                    "pinned": False,
                    "archived": False,
                }
                self._data["thread_meta"].append(row)
            for key, value in patch.model_dump(exclude_unset=True).items():
                if key in ("pinned", "archived") and value is None:
                    continue
                row[key] = value
            await self._save()
            return ThreadMeta.model_validate(row)

    async def list_workspace_threads(self, workspace_id: str | None = None) -> list[WorkspaceThread]:
        rows = [
            link
            for link in self._data["workspace_threads"]
            if workspace_id is None or link["workspace_id"] == workspace_id
        ]
        rows.sort(key=lambda link: (link["created_at"], link["workspace_id"], link["thread_id"]))
        return [WorkspaceThread.model_validate(row) for row in rows]

    async def attach_thread(self, workspace_id: str, thread_id: str) -> WorkspaceThread:
        async with self._lock:
            for link in self._data["workspace_threads"]:
                if link["workspace_id"] == workspace_id and link["thread_id"] == thread_id:
                    return WorkspaceThread.model_validate(link)
            row = {"workspace_id": workspace_id, "thread_id": thread_id, "created_at": now_iso()}
            self._data["workspace_threads"].append(row)
            await self._save()
            return WorkspaceThread.model_validate(row)

    async def detach_thread(self, workspace_id: str, thread_id: str) -> bool:
        async with self._lock:
            links = self._data["workspace_threads"]
            kept = [
                link for link in links if (link["workspace_id"], link["thread_id"]) != (workspace_id, thread_id)
            ]
            if len(kept) == len(links):
                return False
            self._data["workspace_threads"] = kept
            await self._save()
            return True

    # -- Utilities -------------------------------------------------------------

    @staticmethod
    def _find(rows: list[dict[str, Any]], key: str, value: str) -> dict[str, Any] | None:
        for row in rows:
            if row.get(key) == value:
                return row
        return None


def _created_key(row: dict[str, Any]) -> tuple[str, str]:
    return (row.get("created_at") or "", row.get("id") or "")


# -- Sync helpers (run in thread pool) -----------------------------------------


def _read_document(path: Path) -> dict[str, Any] | None:
    """Load the document.  Returns ``None`` when missing.

    An unreadable document is moved aside (``data.json.corrupt``) rather
    than overwritten, and treated as missing.
    """
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        backup = path.with_name(path.name + ".corrupt")
        os.replace(path, backup)
        logger.warning("JSON store: unreadable document moved to {}", backup)
        return None
    return data


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    Ensures readers never see a partially-written file.  The temp file is
    created in the same directory so ``os.rename`` is atomic on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
