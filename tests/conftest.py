"""Shared test fixtures: store backends over a temporary data directory.

Both backends are embedded (SQLite file / JSON document), so no external
service is needed.  Tests that take the ``store`` fixture run once per
backend.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator

import pytest

from godex.control_plane.settings import get_settings
from godex.control_plane.store import JsonStore, SqlStore
from godex.control_plane.store.base import Store


def _set_env(key: str, value: str) -> None:
    """Set an env var and invalidate the settings cache."""
    os.environ[key] = value
    get_settings.cache_clear()


@pytest.fixture(params=["json", "sql"])
async def store(request: pytest.FixtureRequest, tmp_path) -> AsyncIterator[Store]:
    """An initialised store; parametrised over both backends."""
    backend: Store = JsonStore(tmp_path) if request.param == "json" else SqlStore(tmp_path)
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture
async def json_store(tmp_path) -> AsyncIterator[JsonStore]:
    backend = JsonStore(tmp_path)
    await backend.init()
    yield backend
    await backend.close()


@pytest.fixture
def data_dir_env(tmp_path) -> Iterator[str]:
    """Point GODEX_DATA_DIR at a temporary directory."""
    path = str(tmp_path / "data")
    _set_env("GODEX_DATA_DIR", path)
    yield path
    os.environ.pop("GODEX_DATA_DIR", None)
    get_settings.cache_clear()
