import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, Request
from fastapi.responses import FileResponse
from fastapi.routing import APIRouter
from fastapi.staticfiles import StaticFiles
from loguru import logger
from sse_starlette.sse import AppStatus

from godex.control_plane.companion import CompanionProcessManager
from godex.control_plane.deps import require_token
from godex.control_plane.execution.notify import NtfyNotifier
from godex.control_plane.execution.runner import RunManager
from godex.control_plane.log import setup_logging
from godex.control_plane.managers.threads import ThreadCatalog
from godex.control_plane.models.api import HealthResponse
from godex.control_plane.routers.diag import router as diag_router
from godex.control_plane.routers.runs import router as runs_router
from godex.control_plane.routers.threads import router as threads_router
from godex.control_plane.routers.workspaces import router as workspaces_router
from godex.control_plane.settings import GodexSettings, get_settings
from godex.control_plane.store import open_store


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings: GodexSettings = _app.state.settings
    setup_logging(settings.log_level, settings.log_dir)

    auth_token = settings.resolve_auth_token()
    if not settings.auth_token:
        logger.warning("No GODEX_AUTH_TOKEN set -- generated token: {}", auth_token)
    _app.state.auth_token = auth_token

    logger.info("godex starting (host={}, port={})", settings.host, settings.port)

    # -- Store -----------------------------------------------------------------
    store = await open_store(settings)
    _app.state.store = store
    logger.info("Store: {} backend under {}", store.backend, settings.resolve_data_dir())

    # Startup recovery: runs left running by a previous process can never finish.
    swept = await store.mark_stale_runs()
    if swept > 0:
        logger.info("Startup recovery: {} stale runs marked done", swept)

    # -- Companion -------------------------------------------------------------
    companion = CompanionProcessManager.from_settings(settings)
    companion.start()
    _app.state.companion = companion

    # -- Runs ------------------------------------------------------------------
    notifier = NtfyNotifier.from_settings(settings)
    if not notifier.enabled:
        logger.info("Notifications disabled (GODEX_NTFY_URL / GODEX_NTFY_TOPIC unset)")
    run_manager = RunManager(store, notifier=notifier, min_notify_duration=settings.notify_min_duration)
    _app.state.run_manager = run_manager
    _app.state.thread_catalog = ThreadCatalog(companion, store)

    # -- SSE -------------------------------------------------------------------
    # Let run streams deliver their final event during shutdown instead of
    # being cut off as soon as the server starts exiting.
    AppStatus.disable_automatic_graceful_drain()

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("godex shutting down (active_runs={})", run_manager.active_run_count)

    # 1. Stop accepting new runs.
    run_manager.begin_shutdown()

    # 2. Wait for active runs and their notifications.
    timeout = settings.graceful_shutdown_timeout
    if run_manager.active_run_count > 0:
        logger.info("Waiting for {} active runs to finish (timeout={}s)...", run_manager.active_run_count, timeout)
    if not await run_manager.wait_idle(timeout=timeout):
        logger.warning("{} runs still active after {}s", run_manager.active_run_count, timeout)

    # 3. Signal SSE streams to close, after the drain so final events go out.
    AppStatus.should_exit = True
    logger.info("SSE: signalled streams to close")

    await companion.stop()
    await notifier.aclose()
    await store.close()
    logger.info("Store: closed")


def create_app(settings: GodexSettings | None = None) -> FastAPI:
    """Build the ASGI app.

    Components live on ``app.state`` and are created by the lifespan; tests
    set them directly instead.
    """
    settings = settings or get_settings()
    app = FastAPI(title="godex control plane", lifespan=lifespan)
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.auth_token = settings.auth_token

    # -------------------------------------------------------------------------
    # API router -- all backend endpoints live under /api
    # -------------------------------------------------------------------------
    api = APIRouter(prefix="/api", dependencies=[Depends(require_token)])

    @api.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        state = request.app.state
        return HealthResponse(
            pid=os.getpid(),
            uptime=round(time.monotonic() - state.started_at, 3),
            active_runs=state.run_manager.active_run_count,
            store_backend=state.store.backend,
            companion=state.companion.get_status(),
        )

    api.include_router(workspaces_router)
    api.include_router(runs_router)
    api.include_router(threads_router)
    api.include_router(diag_router)

    app.include_router(api)

    # -------------------------------------------------------------------------
    # Static UI serving (GODEX_UI_DIR)
    # -------------------------------------------------------------------------
    if settings.ui_dir and Path(settings.ui_dir).is_dir():
        ui_dir = Path(settings.ui_dir)
        if (ui_dir / "assets").is_dir():
            app.mount("/assets", StaticFiles(directory=ui_dir / "assets"), name="ui-assets")

        @app.get("/{full_path:path}", include_in_schema=False)
        async def serve_spa(full_path: str) -> FileResponse:
            """Serve the SPA index.html for all unmatched routes (client-side routing)."""
            file_path = (ui_dir / full_path).resolve()
            if file_path.is_file() and file_path.is_relative_to(ui_dir.resolve()):
                return FileResponse(file_path)
            return FileResponse(ui_dir / "index.html")

    return app
