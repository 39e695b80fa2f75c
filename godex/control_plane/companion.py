"""Supervisor for the companion agent process (``codex app-server``).

One long-lived child process speaks line-delimited JSON over stdio:

- outbound requests ``{id, method, params}`` and notifications ``{method, params}``;
- inbound responses ``{id, result}`` / ``{id, error}``, notifications, and the
  occasional unsolicited server request, which this client declines with
  ``-32601``.

The manager owns the child's stdin.  Requests are pipelined: each one gets a
future keyed by its id and an independent timeout.  When the child exits,
every pending request fails with ``CompanionExitedError`` and a single
restart is scheduled with exponential backoff.  A failed handshake kills the
child, which routes through the same exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import time
from collections import deque
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from godex.control_plane.models.companion import ClientInfo, CompanionStatus, SpawnSpec
from godex.control_plane.models.enums import CompanionState
from godex.control_plane.store.base import now_iso

if TYPE_CHECKING:
    from godex.control_plane.settings import GodexSettings

Message = dict[str, Any]
MessageHandler = Callable[[Message], None]
Unsubscribe = Callable[[], None]

METHOD_NOT_FOUND = -32601
STREAM_LIMIT = 16 * 1024 * 1024
"""Readline buffer limit; thread payloads can be large single lines."""

_TERMINATE_GRACE = 5.0


# -- Errors --------------------------------------------------------------------


class CompanionError(Exception):
    """Base class for companion process failures."""


class CompanionUnavailableError(CompanionError):
    """The companion is not ready; nothing was written to it."""


class CompanionTimeoutError(CompanionError):
    """No response arrived within the request timeout."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"codex app-server request timeout: {method}")
        self.method = method
        self.timeout = timeout


class CompanionRequestError(CompanionError):
    """The companion answered with an error object."""

    def __init__(self, method: str, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.method = method
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_payload(cls, method: str, error: Any) -> CompanionRequestError:
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message")
            return cls(
                method,
                code if isinstance(code, int) else None,
                message if isinstance(message, str) and message else "codex app-server error",
                error.get("data"),
            )
        return cls(method, None, str(error) or "codex app-server error")


class CompanionExitedError(CompanionError):
    """The process went away while the request was in flight."""


@dataclass
class _PendingRequest:
    method: str
    future: asyncio.Future[Any]


# -- Manager -------------------------------------------------------------------


class CompanionProcessManager:
    """Spawns, supervises and talks to the companion process."""

    def __init__(
        self,
        spawn_spec: SpawnSpec,
        *,
        env: Mapping[str, str] | None = None,
        client_info: ClientInfo | None = None,
        request_timeout: float = 60.0,
        initialize_timeout: float = 20.0,
        restart_base_delay: float = 1.0,
        restart_max_delay: float = 30.0,
        log_lines: int = 200,
        stream_limit: int = STREAM_LIMIT,
    ) -> None:
        self._spawn_spec = spawn_spec
        self._env = dict(env) if env is not None else None
        self._client_info = client_info or ClientInfo()
        self._request_timeout = request_timeout
        self._initialize_timeout = initialize_timeout
        self._restart_base_delay = restart_base_delay
        self._restart_max_delay = restart_max_delay
        self._stream_limit = stream_limit

        self._process: asyncio.subprocess.Process | None = None
        self._pending: dict[str, _PendingRequest] = {}
        self._subscribers: dict[int, MessageHandler] = {}
        self._tokens = itertools.count()
        self._request_counter = itertools.count()
        self._status = CompanionStatus()
        self._log: deque[str] = deque(maxlen=log_lines)
        self._ready = asyncio.Event()

        self._restart_attempts = 0
        self._restart_handle: asyncio.TimerHandle | None = None
        self._spawn_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stopped = False

    @classmethod
    def from_settings(cls, settings: GodexSettings) -> CompanionProcessManager:
        return cls(
            settings.companion_spawn_spec(),
            request_timeout=settings.companion_request_timeout,
            initialize_timeout=settings.companion_initialize_timeout,
            restart_base_delay=settings.companion_restart_base_delay,
            restart_max_delay=settings.companion_restart_max_delay,
            log_lines=settings.companion_log_lines,
        )

    # -- Query -----------------------------------------------------------------

    def get_status(self) -> CompanionStatus:
        return self._status.model_copy()

    def is_ready(self) -> bool:
        return self._status.state == CompanionState.READY

    def get_log_lines(self) -> list[str]:
        return list(self._log)

    def get_spawn_spec(self) -> SpawnSpec:
        return self._spawn_spec.model_copy()

    @property
    def cwd(self) -> str:
        return self._spawn_spec.cwd

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait for the handshake to complete.  ``False`` on timeout."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # -- Subscription ----------------------------------------------------------

    def subscribe(self, handler: MessageHandler) -> Unsubscribe:
        """Receive every notification and unsolicited server request."""
        token = next(self._tokens)
        self._subscribers[token] = handler

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Spawn the child if it is not already running or starting."""
        if self._process is not None or (self._spawn_task is not None and not self._spawn_task.done()):
            return
        self._stopped = False
        self._spawn_task = asyncio.get_running_loop().create_task(self._spawn(), name="companion-spawn")

    async def stop(self) -> None:
        """Terminate the child and cancel pending restarts.  Used at shutdown."""
        self._stopped = True
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

        if self._spawn_task is not None and not self._spawn_task.done():
            self._spawn_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._spawn_task

        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._process = None
        self._ready.clear()
        self._reject_all(CompanionExitedError("codex app-server stopped"))
        self._status = CompanionStatus(state=CompanionState.STOPPED, last_error=self._status.last_error)
        logger.info("Companion stopped")

    async def _spawn(self) -> None:
        spec = self._spawn_spec
        self._status = CompanionStatus(state=CompanionState.STARTING, restarting=self._status.restarting)
        self._ready.clear()
        self._append_log(f"spawn: {' '.join(spec.argv)} (cwd={spec.cwd})")
        logger.info("Companion spawn: {} (cwd={})", spec.argv, spec.cwd)

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=self._env,
                limit=self._stream_limit,
            )
        except OSError as exc:
            self._status.state = CompanionState.ERROR
            self._status.last_error = f"spawn failed: {exc}"
            self._append_log(f"process error: {exc}")
            logger.error("Companion spawn failed: {}", exc)
            self._schedule_restart()
            return

        self._process = process
        self._status.pid = process.pid
        self._track(self._pump_stdout(process), name="companion-stdout")
        self._track(self._pump_stderr(process), name="companion-stderr")
        await self._initialize(process)

    async def _initialize(self, process: asyncio.subprocess.Process) -> None:
        params = {"clientInfo": self._client_info.model_dump()}
        try:
            result = await self._send_request("initialize", params, self._initialize_timeout)
        except CompanionError as exc:
            if self._process is not process:
                # Already exited; the exit path recorded it and scheduled a restart.
                return
            self._status.state = CompanionState.ERROR
            self._status.last_error = str(exc)
            self._append_log(f"initialize error: {exc}")
            logger.warning("Companion handshake failed: {}", exc)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            return

        self.notify("initialized", {})
        self._append_log(f"initialized: {_dumps(result)}")
        self._status.state = CompanionState.READY
        self._status.last_error = None
        self._restart_attempts = 0
        self._ready.set()
        logger.info("Companion ready (pid={})", process.pid)

    def _handle_exit(self, process: asyncio.subprocess.Process, returncode: int | None) -> None:
        if self._process is not process:
            return
        self._process = None
        self._ready.clear()
        self._append_log(f"process exit ({returncode})")
        self._status.pid = None
        if self._status.state != CompanionState.ERROR:
            self._status.last_error = f"process exited ({returncode})"
        self._status.state = CompanionState.ERROR
        self._reject_all(CompanionExitedError("codex app-server exited"))

        if self._stopped:
            self._status.state = CompanionState.STOPPED
            return
        logger.warning("Companion exited with code {}", returncode)
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._restart_handle is not None or self._stopped:
            return
        delay = min(self._restart_max_delay, self._restart_base_delay * 2**self._restart_attempts)
        self._restart_attempts += 1
        self._status.restarting = True
        self._append_log(f"restart scheduled in {int(delay * 1000)}ms")
        self._restart_handle = asyncio.get_running_loop().call_later(delay, self._restart)

    def _restart(self) -> None:
        self._restart_handle = None
        self._status.restarting = False
        if self._process is None and not self._stopped:
            self._spawn_task = asyncio.get_running_loop().create_task(self._spawn(), name="companion-spawn")

    # -- Requests --------------------------------------------------------------

    async def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request and wait for its result.

        Raises ``CompanionUnavailableError`` (before writing anything) unless
        the handshake has completed, ``CompanionTimeoutError`` when the wait
        expires, ``CompanionRequestError`` for remote errors and
        ``CompanionExitedError`` if the child dies first.
        """
        if not self.is_ready() or self._process is None:
            raise CompanionUnavailableError("codex app-server not ready")
        return await self._send_request(method, params, self._request_timeout if timeout is None else timeout)

    def notify(self, method: str, params: Any = None) -> None:
        """Fire-and-forget notification.  Dropped when no child is running."""
        if self._process is None:
            return
        self._write({"method": method, "params": params})

    async def _send_request(self, method: str, params: Any, timeout: float) -> Any:
        process = self._process
        if process is None or process.stdin is None:
            raise CompanionUnavailableError("codex app-server not running")

        request_id = f"{int(time.time() * 1000)}-{next(self._request_counter)}"
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _PendingRequest(method, future)
        try:
            self._write({"id": request_id, "method": method, "params": params})
            try:
                await process.stdin.drain()
            except ConnectionError as exc:
                raise CompanionExitedError(f"codex app-server stdin closed: {exc}") from exc
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            raise CompanionTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    def _write(self, payload: Message) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            return
        process.stdin.write((_dumps(payload) + "\n").encode("utf-8"))

    def _reject_all(self, error: CompanionError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(error)

    # -- Inbound ---------------------------------------------------------------

    async def _pump_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as exc:
                self._append_log(f"stdout: dropped oversized line ({exc})")
                continue
            if not raw:
                break
            self._handle_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        returncode = await process.wait()
        self._handle_exit(process, returncode)

    async def _pump_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            self._append_log(f"stderr: {raw.decode('utf-8', errors='replace').rstrip()}")

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        self._append_log(f"stdout: {line}")
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(message, dict):
            return

        message_id = message.get("id")
        method = message.get("method")
        if message_id is not None and ("result" in message or message.get("error")):
            entry = self._pending.pop(message_id, None) if isinstance(message_id, str) else None
            if entry is None or entry.future.done():
                return
            error = message.get("error")
            if error:
                entry.future.set_exception(CompanionRequestError.from_payload(entry.method, error))
            else:
                entry.future.set_result(message.get("result"))
            return

        if not isinstance(method, str) or not method:
            return
        if message_id is not None:
            self._append_log(f"unexpected request from server: {method}")
            self._write({
                "id": message_id,
                "error": {"code": METHOD_NOT_FOUND, "message": "client does not support server requests"},
            })
        self._emit(message)

    def _emit(self, message: Message) -> None:
        for handler in list(self._subscribers.values()):
            try:
                handler(message)
            except Exception:
                logger.exception("Companion subscriber failed on {}", message.get("method"))

    # -- Utilities -------------------------------------------------------------

    def _append_log(self, line: str) -> None:
        self._log.append(f"[{now_iso()}] {line}")
        logger.debug("companion: {}", line)

    def _track(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Companion task {} crashed", task.get_name())


def _dumps(payload: Any) -> str:
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return "<non-serializable>"
