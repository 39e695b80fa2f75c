import asyncio

import click


@click.group()
def main() -> None:
    """godex - control plane for local coding-agent workspaces."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from GODEX_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from GODEX_PORT or 6969).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the control-plane server."""
    import uvicorn

    from godex.control_plane.settings import GodexSettings

    settings = GodexSettings()

    uvicorn.run(
        "godex.control_plane.app:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Drain timeout plus a buffer for post-drain cleanup (SSE signal,
        # companion stop, store close).
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 30,
    )


# ---------------------------------------------------------------------------
# Store management
# ---------------------------------------------------------------------------


def _open(backend: str | None):
    """Initialise the configured store (or *backend*) for a one-off command."""
    from godex.control_plane.log import setup_logging
    from godex.control_plane.settings import GodexSettings
    from godex.control_plane.store import open_store_at

    settings = GodexSettings()
    setup_logging(settings.log_level)
    return open_store_at(settings.resolve_data_dir(), backend or settings.store_backend)


_backend_option = click.option(
    "--backend",
    type=click.Choice(["auto", "sql", "json"]),
    default=None,
    help="Store backend (default: from GODEX_STORE_BACKEND).",
)


@main.group()
def store() -> None:
    """Inspect and maintain persisted state."""


@store.command()
@_backend_option
def info(backend: str | None) -> None:
    """Show the selected backend and row counts."""

    async def _run() -> None:
        opened = await _open(backend)
        try:
            workspaces = await opened.list_workspaces()
            runs = await opened.count_runs()
            threads = await opened.list_thread_meta()
            links = await opened.list_workspace_threads()
        finally:
            await opened.close()
        click.echo(f"backend:      {opened.backend}")
        click.echo(f"workspaces:   {len(workspaces)}")
        click.echo(f"runs:         {runs}")
        click.echo(f"thread meta:  {len(threads)}")
        click.echo(f"thread links: {len(links)}")

    asyncio.run(_run())


@store.command()
@_backend_option
def sweep(backend: str | None) -> None:
    """Mark runs left running by a previous process as done."""

    async def _run() -> int:
        opened = await _open(backend)
        try:
            return await opened.mark_stale_runs()
        finally:
            await opened.close()

    click.echo(f"Marked {asyncio.run(_run())} stale runs.")


@store.command()
@_backend_option
def migrate(backend: str | None) -> None:
    """Upgrade legacy data in place (runs automatically on every start)."""

    async def _run() -> str:
        opened = await _open(backend)
        await opened.close()
        return opened.backend

    click.echo(f"Store ready ({asyncio.run(_run())} backend).")


if __name__ == "__main__":
    main()
