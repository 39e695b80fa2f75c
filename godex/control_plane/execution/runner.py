"""Run manager -- one lifecycle for spawned commands and relayed activity.

Two creation paths share the same persistence, broadcast and finalize code:

1. **Managed runs** (``start_run``): the manager spawns the command, reads
   stdout/stderr in 4 KiB chunks, normalises each chunk and finalizes when
   the process exits.
2. **External runs** (``start_external_run`` + ``append_external_event`` +
   ``finalize_external_run``): another component drives the work (a
   companion turn) and hands chunks over as they arrive.  External chunks
   are recorded verbatim.

Within a run, ``RunContext.lock`` is held across append + broadcast, so the
order subscribers observe matches ``seq`` order, and ``final`` is always the
last event.  Finalization is idempotent.

Start methods never raise for run failures: a command that cannot be
launched still produces a run, finalized with exit code 127 and a stderr
event describing the error.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from godex.control_plane.broadcast import RunBroadcaster, RunEventHandler, Unsubscribe
from godex.control_plane.context import RunContext
from godex.control_plane.execution.notify import (
    DEFAULT_MIN_DURATION,
    BackgroundTasks,
    Notification,
    Notifier,
    should_fire,
)
from godex.control_plane.execution.output import (
    SUMMARY_EVENT_LIMIT,
    ChunkDecoder,
    build_summary,
    derive_workspace_status,
    normalize_chunk,
    snippet_of,
    truncate_summary,
)
from godex.control_plane.models.enums import LAUNCH_FAILURE_EXIT_CODE, RunStatus, RunStream
from godex.control_plane.models.run import RunCreate, RunEvent, RunFinal, RunPatch, RunStreamEvent
from godex.control_plane.models.workspace import WorkspacePatch
from godex.control_plane.registry import RunRegistry
from godex.control_plane.store.base import now_iso

if TYPE_CHECKING:
    from godex.control_plane.store.base import Store

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
PROCESS_ERROR_EXIT_CODE = 1

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]
Clock = Callable[[], float]


@dataclass
class RunStartRequest:
    """A command to run as a managed run."""

    type: str
    command: str
    cwd: str
    args: list[str] = field(default_factory=list)
    workspace_id: str | None = None
    env: Mapping[str, str] | None = None
    """Extra environment variables layered over the server's own."""

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])


@dataclass
class _Launch:
    argv: list[str]
    env: dict[str, str]


class RunManager:
    def __init__(
        self,
        store: Store,
        *,
        registry: RunRegistry | None = None,
        broadcaster: RunBroadcaster | None = None,
        notifier: Notifier | None = None,
        background: BackgroundTasks | None = None,
        min_notify_duration: float = DEFAULT_MIN_DURATION,
        clock: Clock = time.monotonic,
        spawn: Spawner = asyncio.create_subprocess_exec,
    ) -> None:
        self._store = store
        self._registry = registry or RunRegistry()
        self._broadcaster = broadcaster or RunBroadcaster()
        self._notifier = notifier
        self._background = background or BackgroundTasks()
        self._min_notify_duration = min_notify_duration
        self._clock = clock
        self._spawn = spawn
        self._run_tasks: set[asyncio.Task[Any]] = set()

    # -- Query -----------------------------------------------------------------

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    @property
    def active_run_count(self) -> int:
        return self._registry.active_count

    def is_active(self, run_id: str) -> bool:
        return self._registry.get(run_id) is not None

    def subscribe(self, run_id: str, handler: RunEventHandler) -> Unsubscribe:
        """Live events for *run_id* from now on.  No replay."""
        return self._broadcaster.subscribe(run_id, handler)

    # -- Managed runs ----------------------------------------------------------

    async def start_run(self, request: RunStartRequest) -> str:
        """Spawn *request* and return its run id immediately.

        Raises ``ShuttingDownError`` (before creating anything) once shutdown
        has begun.
        """
        ctx = await self._open_run(
            run_type=request.type,
            command=request.command_line,
            cwd=request.cwd,
            workspace_id=request.workspace_id,
            external=False,
        )
        logger.info("Run %s started (type=%s, cwd=%s): %s", ctx.run_id, request.type, request.cwd, request.command_line)

        try:
            launch = self._prepare_launch(request)
        except Exception as exc:
            logger.exception("Run %s: launch preparation failed", ctx.run_id)
            await self._finalize(ctx, LAUNCH_FAILURE_EXIT_CODE, f"Failed to load dependencies: {exc}")
            return ctx.run_id

        try:
            process = await self._spawn(
                *launch.argv,
                cwd=request.cwd,
                env=launch.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.error("Run %s failed to start: %s", ctx.run_id, exc)
            await self._finalize(ctx, LAUNCH_FAILURE_EXIT_CODE, f"Failed to start command: {exc}")
            return ctx.run_id

        task = asyncio.get_running_loop().create_task(self._supervise(ctx, process), name=f"run-{ctx.run_id}")
        self._run_tasks.add(task)
        task.add_done_callback(self._on_run_task_done)
        return ctx.run_id

    def _prepare_launch(self, request: RunStartRequest) -> _Launch:
        env = dict(os.environ)
        for key, value in (request.env or {}).items():
            if not isinstance(value, str):
                msg = f"environment variable {key!r} must be a string, got {type(value).__name__}"
                raise TypeError(msg)
            env[key] = value
        return _Launch(argv=[request.command, *request.args], env=env)

    async def _supervise(self, ctx: RunContext, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.gather(
                self._pump(ctx, process.stdout, RunStream.STDOUT),
                self._pump(ctx, process.stderr, RunStream.STDERR),
            )
            returncode = await process.wait()
        except Exception as exc:
            logger.exception("Run %s: process error", ctx.run_id)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await self._finalize(ctx, PROCESS_ERROR_EXIT_CODE, f"Process error: {exc}")
            return
        await self._finalize(ctx, returncode)

    async def _pump(self, ctx: RunContext, stream: asyncio.StreamReader | None, kind: RunStream) -> None:
        if stream is None:
            return
        decoder = ChunkDecoder()
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            await self._handle_managed_chunk(ctx, kind, decoder.decode(data))
        await self._handle_managed_chunk(ctx, kind, decoder.flush())

    async def _handle_managed_chunk(self, ctx: RunContext, stream: RunStream, text: str) -> None:
        cleaned = normalize_chunk(text, ctx.run_type)
        if cleaned is None:
            return
        await self._record_chunk(ctx, stream, cleaned)

    def _on_run_task_done(self, task: asyncio.Task[Any]) -> None:
        self._run_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Run task %s crashed", task.get_name(), exc_info=task.exception())

    # -- External runs ---------------------------------------------------------

    async def start_external_run(
        self,
        *,
        run_type: str,
        command: str,
        cwd: str,
        workspace_id: str | None = None,
    ) -> str:
        """Record a run whose work happens elsewhere.  Returns its id."""
        ctx = await self._open_run(
            run_type=run_type, command=command, cwd=cwd, workspace_id=workspace_id, external=True
        )
        logger.info("External run %s started (type=%s)", ctx.run_id, run_type)
        return ctx.run_id

    async def append_external_event(self, run_id: str, stream: RunStream, chunk: str) -> RunEvent | None:
        """Record a chunk for an external run.  Dropped once the run is final."""
        ctx = self._registry.get(run_id)
        if ctx is None or not chunk:
            logger.debug("Dropping chunk for inactive run %s", run_id)
            return None
        return await self._record_chunk(ctx, stream, chunk)

    async def finalize_external_run(self, run_id: str, exit_code: int | None, error_message: str | None = None) -> None:
        ctx = self._registry.get(run_id)
        if ctx is None:
            return
        await self._finalize(ctx, exit_code, error_message)

    # -- Shared pipeline -------------------------------------------------------

    async def _open_run(
        self,
        *,
        run_type: str,
        command: str,
        cwd: str,
        workspace_id: str | None,
        external: bool,
    ) -> RunContext:
        ctx = RunContext(
            run_id=str(uuid.uuid4()),
            run_type=run_type,
            workspace_id=workspace_id,
            external=external,
            started_at=self._clock(),
        )
        self._registry.register(ctx)
        try:
            await self._store.create_run(
                RunCreate(id=ctx.run_id, workspace_id=workspace_id, type=run_type, command=command, cwd=cwd)
            )
        except BaseException:
            self._registry.unregister(ctx.run_id)
            raise
        return ctx

    async def _record_chunk(self, ctx: RunContext, stream: RunStream, text: str) -> RunEvent | None:
        async with ctx.lock:
            if ctx.finished:
                return None
            event = await self._store.append_run_event(ctx.run_id, stream, text)
            ctx.last_snippet = snippet_of(text)
            ctx.tracker.feed(text)
            await self._store.update_run(ctx.run_id, RunPatch(last_snippet=ctx.last_snippet))
            self._broadcaster.broadcast(RunStreamEvent.for_chunk(event))
            return event

    async def _finalize(self, ctx: RunContext, exit_code: int | None, error_message: str | None = None) -> None:
        async with ctx.lock:
            if ctx.finished:
                return
            ctx.finished = True

            if error_message:
                event = await self._store.append_run_event(ctx.run_id, RunStream.STDERR, error_message)
                ctx.last_snippet = snippet_of(error_message)
                self._broadcaster.broadcast(RunStreamEvent.for_chunk(event))

            status = derive_workspace_status(exit_code, ctx.tracker.detected)
            await self._store.update_run(
                ctx.run_id,
                RunPatch(status=RunStatus.DONE, exit_code=exit_code, last_snippet=ctx.last_snippet),
            )
            self._registry.unregister(ctx.run_id)

            workspace = None
            if ctx.workspace_id is not None:
                # Read before overwriting: the gate needs the previous status.
                workspace = await self._store.get_workspace(ctx.workspace_id)
                if workspace is not None:
                    await self._store.update_workspace(ctx.workspace_id, WorkspacePatch(status=status))

            self._broadcaster.broadcast(
                RunStreamEvent.for_final(RunFinal(run_id=ctx.run_id, ts=now_iso(), exit_code=exit_code))
            )

        duration = self._clock() - ctx.started_at
        logger.info("Run %s finished (exit_code=%s, status=%s, %.1fs)", ctx.run_id, exit_code, status, duration)

        if workspace is None or self._notifier is None:
            return
        # Whole seconds, half rounded up.
        duration_sec = math.floor(duration + 0.5)
        if not should_fire(workspace.notify_policy, workspace.status, status, duration_sec, self._min_notify_duration):
            return
        events = await self._store.get_run_events(ctx.run_id, SUMMARY_EVENT_LIMIT)
        summary = truncate_summary(build_summary((event.chunk for event in events), status))
        notification = Notification(
            workspace_id=workspace.id,
            workspace_title=workspace.title,
            status=status,
            summary=summary,
            run_id=ctx.run_id,
        )
        self._background.spawn_detached(self._notifier.send(notification), name=f"notify-{ctx.run_id}")

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        self._registry.begin_shutdown()

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for active runs to finalize and their side effects to settle."""
        drained = await self._registry.wait_until_drained(timeout=timeout)
        if self._run_tasks:
            await asyncio.wait(set(self._run_tasks), timeout=timeout)
        await self._background.drain(timeout=timeout)
        return drained
