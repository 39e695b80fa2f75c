"""Embedded relational store (SQLite through SQLAlchemy async + aiosqlite).

Layout::

    {data_dir}/godex.sqlite

The schema is created at ``init``.  Databases written by older releases
(a ``sessions`` table with ``notify_mode``, runs keyed by ``session_id``) are
upgraded in place first, inside the same transaction.
"""

from __future__ import annotations

import asyncio
import uuid
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger
from sqlalchemy import Connection, delete, func, inspect, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from godex.control_plane.db import tables
from godex.control_plane.db.engine import create_engine, create_session_factory, sqlite_url
from godex.control_plane.models.enums import (
    DEFAULT_NOTIFY_POLICY,
    LEGACY_NOTIFY_POLICIES,
    STALE_RUN_EXIT_CODE,
    RunStatus,
    RunStream,
    WorkspaceStatus,
)
from godex.control_plane.models.run import Run, RunCreate, RunEvent, RunPatch
from godex.control_plane.models.thread import ThreadMeta, ThreadMetaPatch, WorkspaceThread
from godex.control_plane.models.workspace import Workspace, WorkspacePatch
from godex.control_plane.store.base import now_iso

DATABASE_FILENAME = "godex.sqlite"

# Columns added after the first release; (name, DDL fragment).
_ADDED_WORKSPACE_COLUMNS = (
    ("status", "status TEXT NOT NULL DEFAULT 'idle'"),
    ("notify_policy", f"notify_policy TEXT DEFAULT '{DEFAULT_NOTIFY_POLICY.value}'"),
    ("default_thread_id", "default_thread_id TEXT"),
    ("test_command_override", "test_command_override TEXT"),
)


class SqlStore:
    """SQLite implementation of the ``Store`` protocol."""

    backend = "sql"

    def __init__(self, data_dir: str | Path, *, database_url: str | None = None) -> None:
        self._data_dir = Path(data_dir)
        self._url = database_url or sqlite_url(self._data_dir / DATABASE_FILENAME)
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        # Held across the read-max / insert pair of append_run_event.
        self._append_lock = asyncio.Lock()

    # -- Lifecycle -------------------------------------------------------------

    async def init(self) -> None:
        await to_thread.run_sync(partial(self._data_dir.mkdir, parents=True, exist_ok=True))
        engine = create_engine(self._url)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(_prepare_schema)
        except Exception:
            await engine.dispose()
            raise
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        logger.info("SQL store ready at {}", self._url)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _session(self) -> AsyncSession:
        if self._session_factory is None:
            msg = "SqlStore used before init()"
            raise RuntimeError(msg)
        return self._session_factory()

    # -- Workspaces ------------------------------------------------------------

    async def list_workspaces(self) -> list[Workspace]:
        stmt = select(tables.Workspace).order_by(tables.Workspace.created_at.desc(), tables.Workspace.id.desc())
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Workspace.model_validate(row) for row in rows]

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        async with self._session() as session:
            row = await session.get(tables.Workspace, workspace_id)
            return Workspace.model_validate(row) if row is not None else None

    async def create_workspace(self, *, title: str, repo_path: str, workspace_id: str | None = None) -> Workspace:
        ts = now_iso()
        row = tables.Workspace(
            id=workspace_id or str(uuid.uuid4()),
            title=title,
            repo_path=repo_path,
            status=WorkspaceStatus.IDLE.value,
            notify_policy=DEFAULT_NOTIFY_POLICY.value,
            default_thread_id=None,
            test_command_override=None,
            created_at=ts,
            updated_at=ts,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
            return Workspace.model_validate(row)

    async def update_workspace(self, workspace_id: str, patch: WorkspacePatch) -> Workspace | None:
        async with self._session() as session:
            row = await session.get(tables.Workspace, workspace_id)
            if row is None:
                return None
            for key, value in patch.model_dump(exclude_unset=True, mode="json").items():
                setattr(row, key, value)
            row.updated_at = now_iso()
            await session.commit()
            return Workspace.model_validate(row)

    async def delete_workspace(self, workspace_id: str) -> bool:
        async with self._session() as session:
            row = await session.get(tables.Workspace, workspace_id)
            if row is None:
                return False
            await self._delete_runs(session, workspace_id)
            await session.execute(
                delete(tables.WorkspaceThread).where(tables.WorkspaceThread.workspace_id == workspace_id)
            )
            await session.delete(row)
            await session.commit()
            return True

    # -- Runs ------------------------------------------------------------------

    async def list_runs_by_workspace(self, workspace_id: str, limit: int = 10) -> list[Run]:
        stmt = (
            select(tables.Run)
            .where(tables.Run.workspace_id == workspace_id)
            .order_by(tables.Run.created_at.desc(), tables.Run.id.desc())
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Run.model_validate(row) for row in rows]

    async def get_run(self, run_id: str) -> Run | None:
        async with self._session() as session:
            row = await session.get(tables.Run, run_id)
            return Run.model_validate(row) if row is not None else None

    async def create_run(self, run: RunCreate) -> Run:
        ts = now_iso()
        row = tables.Run(
            **run.model_dump(),
            status=RunStatus.RUNNING.value,
            exit_code=None,
            created_at=ts,
            updated_at=ts,
            last_snippet=None,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
            return Run.model_validate(row)

    async def update_run(self, run_id: str, patch: RunPatch) -> Run | None:
        async with self._session() as session:
            row = await session.get(tables.Run, run_id)
            if row is None:
                return None
            for key, value in patch.model_dump(exclude_unset=True, mode="json").items():
                setattr(row, key, value)
            row.updated_at = now_iso()
            await session.commit()
            return Run.model_validate(row)

    async def append_run_event(self, run_id: str, stream: RunStream, chunk: str, ts: str | None = None) -> RunEvent:
        async with self._append_lock, self._session() as session:
            current = await session.scalar(
                select(func.max(tables.RunEvent.seq)).where(tables.RunEvent.run_id == run_id)
            )
            row = tables.RunEvent(
                run_id=run_id,
                seq=(current or 0) + 1,
                ts=ts or now_iso(),
                stream=RunStream(stream).value,
                chunk=chunk,
            )
            session.add(row)
            await session.commit()
            return RunEvent.model_validate(row)

    async def get_run_events(self, run_id: str, limit: int | None = None) -> list[RunEvent]:
        if limit is not None and limit <= 0:
            return []
        stmt = select(tables.RunEvent).where(tables.RunEvent.run_id == run_id)
        if limit is None:
            stmt = stmt.order_by(tables.RunEvent.seq.asc())
        else:
            stmt = stmt.order_by(tables.RunEvent.seq.desc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            events = [RunEvent.model_validate(row) for row in rows]
        if limit is not None:
            events.reverse()
        return events

    async def clear_runs_for_workspace(self, workspace_id: str) -> int:
        async with self._session() as session:
            count = await self._delete_runs(session, workspace_id)
            await session.commit()
            return count

    async def mark_stale_runs(self) -> int:
        stmt = (
            update(tables.Run)
            .where(tables.Run.status == RunStatus.RUNNING.value)
            .values(status=RunStatus.DONE.value, exit_code=STALE_RUN_EXIT_CODE, updated_at=now_iso())
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def count_runs(self) -> int:
        async with self._session() as session:
            return (await session.execute(select(func.count()).select_from(tables.Run))).scalar_one()

    @staticmethod
    async def _delete_runs(session: AsyncSession, workspace_id: str) -> int:
        run_ids = list(
            (await session.execute(select(tables.Run.id).where(tables.Run.workspace_id == workspace_id))).scalars()
        )
        if not run_ids:
            return 0
        await session.execute(delete(tables.RunEvent).where(tables.RunEvent.run_id.in_(run_ids)))
        await session.execute(delete(tables.Run).where(tables.Run.id.in_(run_ids)))
        return len(run_ids)

    # -- Threads ---------------------------------------------------------------

    async def list_thread_meta(self) -> list[ThreadMeta]:
        stmt = select(tables.ThreadMeta).order_by(tables.ThreadMeta.thread_id.asc())
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [ThreadMeta.model_validate(row) for row in rows]

    async def get_thread_meta(self, thread_id: str) -> ThreadMeta | None:
        async with self._session() as session:
            row = await session.get(tables.ThreadMeta, thread_id)
            return ThreadMeta.model_validate(row) if row is not None else None

    async def upsert_thread_meta(self, thread_id: str, patch: ThreadMetaPatch) -> ThreadMeta:
        async with self._session() as session:
            row = await session.get(tables.ThreadMeta, thread_id)
            if row is None:
                row = tables.ThreadMeta(thread_id=thread_id, pinned=False, archived=False)
                session.add(row)
            for key, value in patch.model_dump(exclude_unset=True).items():
                if key in ("pinned", "archived") and value is None:
                    continue
                setattr(row, key, value)
            await session.commit()
            return ThreadMeta.model_validate(row)

    async def list_workspace_threads(self, workspace_id: str | None = None) -> list[WorkspaceThread]:
        stmt = select(tables.WorkspaceThread).order_by(
            tables.WorkspaceThread.created_at.asc(),
            tables.WorkspaceThread.workspace_id.asc(),
            tables.WorkspaceThread.thread_id.asc(),
        )
        if workspace_id is not None:
            stmt = stmt.where(tables.WorkspaceThread.workspace_id == workspace_id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [WorkspaceThread.model_validate(row) for row in rows]

    async def attach_thread(self, workspace_id: str, thread_id: str) -> WorkspaceThread:
        async with self._session() as session:
            row = await session.get(tables.WorkspaceThread, (workspace_id, thread_id))
            if row is None:
                row = tables.WorkspaceThread(workspace_id=workspace_id, thread_id=thread_id, created_at=now_iso())
                session.add(row)
                await session.commit()
            return WorkspaceThread.model_validate(row)

    async def detach_thread(self, workspace_id: str, thread_id: str) -> bool:
        stmt = delete(tables.WorkspaceThread).where(
            tables.WorkspaceThread.workspace_id == workspace_id,
            tables.WorkspaceThread.thread_id == thread_id,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)


# -- Schema (run inside ``AsyncConnection.run_sync``) ---------------------------


def _prepare_schema(conn: Connection) -> None:
    legacy_runs = _upgrade_legacy_tables(conn)
    tables.Base.metadata.create_all(conn)
    if legacy_runs:
        _copy_legacy_runs(conn)
    _rewrite_legacy_values(conn)


def _upgrade_legacy_tables(conn: Connection) -> bool:
    """Rename legacy tables/columns.  Returns ``True`` if runs need copying."""
    names = set(inspect(conn).get_table_names())

    if "sessions" in names and "workspaces" not in names:
        logger.info("SQL store: renaming legacy table sessions -> workspaces")
        conn.exec_driver_sql("ALTER TABLE sessions RENAME TO workspaces")
        names.add("workspaces")

    if "workspaces" in names:
        columns = {col["name"] for col in inspect(conn).get_columns("workspaces")}
        if "notify_mode" in columns and "notify_policy" not in columns:
            logger.info("SQL store: renaming workspaces.notify_mode -> notify_policy")
            conn.exec_driver_sql("ALTER TABLE workspaces RENAME COLUMN notify_mode TO notify_policy")
            columns.add("notify_policy")
        for name, ddl in _ADDED_WORKSPACE_COLUMNS:
            if name not in columns:
                logger.info("SQL store: adding column workspaces.{}", name)
                conn.exec_driver_sql(f"ALTER TABLE workspaces ADD COLUMN {ddl}")

    if "runs" in names:
        columns = {col["name"] for col in inspect(conn).get_columns("runs")}
        if "session_id" in columns and "workspace_id" not in columns:
            # The legacy column is NOT NULL; rebuild instead of renaming.
            logger.info("SQL store: rebuilding legacy runs table")
            conn.exec_driver_sql("ALTER TABLE runs RENAME TO runs_legacy")
            return True
    return False


def _copy_legacy_runs(conn: Connection) -> None:
    conn.exec_driver_sql(
        "INSERT INTO runs "
        "(id, workspace_id, type, command, cwd, status, exit_code, created_at, updated_at, last_snippet) "
        "SELECT id, session_id, type, command, cwd, status, exit_code, created_at, updated_at, last_snippet "
        "FROM runs_legacy"
    )
    conn.exec_driver_sql("DROP TABLE runs_legacy")


def _rewrite_legacy_values(conn: Connection) -> None:
    for legacy, current in LEGACY_NOTIFY_POLICIES.items():
        conn.execute(
            update(tables.Workspace).where(tables.Workspace.notify_policy == legacy).values(notify_policy=current.value)
        )
    conn.execute(
        update(tables.Workspace)
        .where(or_(tables.Workspace.notify_policy.is_(None), tables.Workspace.notify_policy == ""))
        .values(notify_policy=DEFAULT_NOTIFY_POLICY.value)
    )
