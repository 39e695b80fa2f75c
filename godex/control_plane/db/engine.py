"""Async SQLAlchemy engine and session factory.

Uses aiosqlite through the ``sqlite+aiosqlite://`` URL.  The database is a
single file under the data directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def sqlite_url(path: str | Path) -> str:
    return f"sqlite+aiosqlite:///{Path(path)}"


def create_engine(database_url: str, **kwargs: object) -> AsyncEngine:
    """Create an async SQLAlchemy engine for an embedded SQLite file.

    - **timeout=30**: wait on a locked database file instead of failing fast.
    - **journal_mode=WAL**: readers are not blocked by the single writer.

    All defaults can be overridden via *kwargs*.
    """
    defaults: dict[str, Any] = {
        "echo": False,
        "connect_args": {"timeout": 30},
    }
    defaults.update(kwargs)
    engine = create_async_engine(database_url, **defaults)
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*.

    ``expire_on_commit=False`` so that ORM instances remain usable after
    commit without triggering lazy loads (important for async code where
    implicit IO is forbidden).
    """
    return async_sessionmaker(engine, expire_on_commit=False)


def _set_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()
