"""FastAPI dependency injection for the control-plane components.

Usage in route handlers::

    @router.post("/{workspace_id}/message")
    async def send_message(workspace_id: str, store: StoreDep, runs: RunMgr) -> RunStarted:
        ...

Every component is created once during app lifespan and stored on
``app.state``; these dependencies only look them up.  A component that is
missing (lifespan not run, startup failed) yields HTTP 503.
"""

from __future__ import annotations

import secrets
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Query, Request, status

from godex.control_plane.companion import CompanionProcessManager
from godex.control_plane.execution.runner import RunManager
from godex.control_plane.managers.threads import ThreadCatalog
from godex.control_plane.settings import GodexSettings
from godex.control_plane.store.base import Store


def _component(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialised.",
        )
    return value


def get_settings_dep(request: Request) -> GodexSettings:
    return _component(request, "settings")


def get_store(request: Request) -> Store:
    return _component(request, "store")


def get_run_manager(request: Request) -> RunManager:
    return _component(request, "run_manager")


def get_companion(request: Request) -> CompanionProcessManager:
    return _component(request, "companion")


def get_thread_catalog(request: Request) -> ThreadCatalog:
    return _component(request, "thread_catalog")


# -- Auth ----------------------------------------------------------------------


def require_token(
    request: Request,
    token: Annotated[str | None, Query(include_in_schema=False)] = None,
) -> None:
    """Check the bearer token from the ``Authorization`` header or ``?token=``.

    The query form exists for ``EventSource``, which cannot set headers.
    Auth is disabled when ``app.state.auth_token`` is empty.
    """
    expected: str | None = getattr(request.app.state, "auth_token", None)
    if not expected:
        return

    provided = token
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        provided = credentials.strip()

    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


# -- Annotated type aliases for concise route signatures ---------------------

SettingsDep = Annotated[GodexSettings, Depends(get_settings_dep)]
"""Annotated dependency: settings the app was started with."""

StoreDep = Annotated[Store, Depends(get_store)]
"""Annotated dependency: the selected store backend."""

RunMgr = Annotated[RunManager, Depends(get_run_manager)]
"""Annotated dependency: the run manager."""

Companion = Annotated[CompanionProcessManager, Depends(get_companion)]
"""Annotated dependency: the companion process manager."""

Threads = Annotated[ThreadCatalog, Depends(get_thread_catalog)]
"""Annotated dependency: the companion-backed thread catalog."""
