"""Store backends for workspaces, runs and thread annotations."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from godex.control_plane.store.base import Store, now_iso
from godex.control_plane.store.json_file import JsonStore
from godex.control_plane.store.migrate import migrate_legacy_data
from godex.control_plane.store.sql import SqlStore

if TYPE_CHECKING:
    from godex.control_plane.settings import GodexSettings

__all__ = ["JsonStore", "SqlStore", "Store", "migrate_legacy_data", "now_iso", "open_store", "open_store_at"]


async def open_store(settings: GodexSettings) -> Store:
    """Build and initialise the store selected by ``settings.store_backend``."""
    return await open_store_at(settings.resolve_data_dir(), settings.store_backend)


async def open_store_at(data_dir: str | Path, backend: str = "auto") -> Store:
    """Initialise a store under *data_dir*.

    ``auto`` tries the SQL backend first and falls back to the JSON document
    when the database cannot be opened or upgraded.  An explicit backend
    propagates its initialisation error.
    """
    if backend == "json":
        store: Store = JsonStore(data_dir)
        await store.init()
        return store

    sql_store = SqlStore(data_dir)
    if backend == "sql":
        await sql_store.init()
        return sql_store

    try:
        await sql_store.init()
    except Exception:
        logger.exception("SQL store unavailable under {}, falling back to JSON", data_dir)
        store = JsonStore(data_dir)
        await store.init()
        return store
    return sql_store
