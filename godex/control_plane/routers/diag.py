"""Diagnostics for the companion process setup."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import sys

from fastapi import APIRouter

from godex.control_plane.deps import Companion
from godex.control_plane.models.api import CommandProbe, CompanionDiagnostics

router = APIRouter(prefix="/diag", tags=["diag"])

PATH_MAX_LENGTH = 2000
PROBE_TIMEOUT = 5.0
PROBE_OUTPUT_LENGTH = 2000


async def probe_command(argv: list[str], *, cwd: str | None = None, timeout: float = PROBE_TIMEOUT) -> CommandProbe:
    """Run *argv* to completion and capture its output.  Never raises."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return CommandProbe(ok=False, error=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        return CommandProbe(ok=False, code=process.returncode, error=f"timed out after {timeout:g}s")

    return CommandProbe(
        ok=process.returncode == 0,
        code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace").strip()[:PROBE_OUTPUT_LENGTH],
        stderr=stderr.decode("utf-8", errors="replace").strip()[:PROBE_OUTPUT_LENGTH],
    )


@router.get("/companion", response_model=CompanionDiagnostics)
async def companion_diagnostics(companion: Companion) -> CompanionDiagnostics:
    """Where the companion executable resolves, its version, and supervisor state."""
    spawn = companion.get_spawn_spec()
    return CompanionDiagnostics(
        platform=sys.platform,
        cwd=os.getcwd(),
        spawn=spawn,
        path=os.environ.get("PATH", "")[:PATH_MAX_LENGTH],
        which=shutil.which(spawn.command),
        version=await probe_command([spawn.command, "--version"], cwd=spawn.cwd),
        status=companion.get_status(),
        logs=companion.get_log_lines(),
    )
