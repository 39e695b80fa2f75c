"""Service configuration loaded from GODEX_* environment variables."""

from __future__ import annotations

import os
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from godex.control_plane.models.companion import SpawnSpec


class GodexSettings(BaseSettings):
    """godex control-plane settings.

    All fields are read from environment variables with the ``GODEX_`` prefix.
    For example, ``GODEX_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    The settings object is built once at startup and handed to each component
    constructor; components never read the environment on their own.
    """

    model_config = SettingsConfigDict(
        env_prefix="GODEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_dir: str | None = None
    """When set, a rotating ``godex.log`` is written here as well as stderr."""

    # -- Data storage ----------------------------------------------------------
    data_dir: str = "./.godex"
    """Root directory for persisted state (``godex.sqlite`` or ``data.json``)."""

    store_backend: Literal["auto", "sql", "json"] = "auto"
    """``auto`` tries the embedded SQL store first and falls back to JSON."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 6969
    auth_token: str | None = None
    """Bearer token for API access.  Auto-generated at startup if empty."""

    ui_dir: str | None = None
    graceful_shutdown_timeout: int = 60
    """Seconds to wait for active runs to finish during shutdown."""

    # -- Agent CLI / companion process -----------------------------------------
    codex_bin: str = "codex"
    codex_full_access: bool = False
    """Run the agent CLI without approvals or sandbox (trusted machines only)."""

    companion_cwd: str | None = None
    companion_request_timeout: float = 60.0
    companion_initialize_timeout: float = 20.0
    companion_restart_base_delay: float = 1.0
    companion_restart_max_delay: float = 30.0
    companion_log_lines: int = 200

    # -- Notifications ---------------------------------------------------------
    ntfy_url: str | None = None
    ntfy_topic: str | None = None
    public_url: str | None = None
    """Base URL of the dashboard, used for click-through links."""

    notify_min_duration: float = 30.0
    """Successful runs shorter than this never notify, even under policy ``all``."""

    # -- Helpers ---------------------------------------------------------------

    def resolve_auth_token(self) -> str:
        """Return the configured token or generate a random one."""
        if self.auth_token:
            return self.auth_token
        return secrets.token_urlsafe(32)

    def resolve_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser().resolve()

    def resolve_companion_cwd(self) -> str:
        if self.companion_cwd:
            return str(Path(self.companion_cwd).expanduser().resolve())
        return os.getcwd()

    def companion_spawn_spec(self) -> SpawnSpec:
        return build_spawn_spec(self.codex_bin, self.resolve_companion_cwd(), ["app-server"])


def build_spawn_spec(codex_bin: str, cwd: str, args: list[str]) -> SpawnSpec:
    """Describe an invocation of the agent executable."""
    command = codex_bin.strip() or "codex"
    return SpawnSpec(command=command, args=list(args), cwd=cwd)


@lru_cache(maxsize=1)
def get_settings() -> GodexSettings:
    """Return a cached settings instance for the ASGI app.

    Call ``get_settings.cache_clear()`` in tests to force a re-read after
    overriding env vars.
    """
    return GodexSettings()
