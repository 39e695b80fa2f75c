"""Relay a companion thread turn into an external run.

``start_thread_turn`` records an external run, asks the companion to resume
the thread and start a turn, and hands every notification belonging to that
turn to the run manager:

- text (deltas or completed agent messages) goes to ``stdout``;
- anything else is summarised onto ``stderr``;
- ``turn/completed`` finalizes the run (exit 1 when the turn failed).

Companion callbacks are synchronous, so notifications are queued and a
detached consumer task does the (async) persistence in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from godex.control_plane.companion import CompanionError, CompanionUnavailableError
from godex.control_plane.extract import (
    extract_delta_text,
    extract_message_text,
    extract_result_turn_id,
    extract_thread_id,
    extract_turn_id,
    extract_turn_status,
    summarize_notification,
)
from godex.control_plane.models.enums import RunStream, RunType
from godex.control_plane.models.thread import ThreadMetaPatch
from godex.control_plane.store.base import now_iso

if TYPE_CHECKING:
    from godex.control_plane.companion import CompanionProcessManager, Message
    from godex.control_plane.execution.runner import RunManager
    from godex.control_plane.store.base import Store

logger = logging.getLogger(__name__)

THREAD_RUN_COMMAND = "codex app-server"
TURN_FAILED_EXIT_CODE = 1

_STOP = object()


class TurnRelay:
    """Filters companion notifications for one turn and records them on a run.

    Notifications queue up until ``begin`` is called with the result of
    ``turn/start``; only then is the turn id known and the queue drained.
    """

    def __init__(self, runs: RunManager, run_id: str, thread_id: str) -> None:
        self.runs = runs
        self.run_id = run_id
        self.thread_id = thread_id
        self.turn_id: str | None = None
        self.completed = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._started = asyncio.Event()
        self._aborted = False

    def on_message(self, message: Message) -> None:
        self._queue.put_nowait(message)

    def begin(self, turn_id: str | None) -> None:
        """Release queued notifications; *turn_id* from ``turn/start`` wins over any adopted one."""
        if turn_id:
            self.turn_id = turn_id
        self._started.set()

    def abort(self) -> None:
        self._aborted = True
        self._queue.put_nowait(_STOP)
        self._started.set()

    def adopt_turn(self, turn_id: str | None) -> None:
        if turn_id and not self.turn_id:
            self.turn_id = turn_id

    async def consume(self) -> None:
        await self._started.wait()
        while not self.completed and not self._aborted:
            message = await self._queue.get()
            if message is _STOP:
                return
            await self.handle(message)

    async def handle(self, message: Message) -> None:
        """Record one notification.  Messages for other threads or turns are ignored."""
        thread_id = extract_thread_id(message)
        if thread_id and thread_id != self.thread_id:
            return
        turn_id = extract_turn_id(message)
        if turn_id and self.turn_id and turn_id != self.turn_id:
            return
        self.adopt_turn(turn_id)

        text = extract_delta_text(message) or extract_message_text(message)
        if text:
            await self.runs.append_external_event(self.run_id, RunStream.STDOUT, text)
        else:
            await self.runs.append_external_event(self.run_id, RunStream.STDERR, summarize_notification(message))

        if message.get("method") == "turn/completed":
            self.completed = True
            exit_code = TURN_FAILED_EXIT_CODE if extract_turn_status(message) == "failed" else 0
            await self.runs.finalize_external_run(self.run_id, exit_code)


async def start_thread_turn(
    companion: CompanionProcessManager,
    runs: RunManager,
    store: Store,
    thread_id: str,
    text: str,
    *,
    workspace_id: str | None = None,
) -> str:
    """Send *text* to a thread and return the run that records the turn.

    Raises ``ValueError`` for empty text and ``CompanionUnavailableError``
    when the companion is not ready, both before creating a run.  Failures
    after that point finalize the run with exit code 1 instead of raising.
    """
    text = text.strip()
    if not text:
        msg = "text required"
        raise ValueError(msg)
    if not companion.is_ready():
        raise CompanionUnavailableError("codex app-server not ready")

    run_id = await runs.start_external_run(
        run_type=RunType.CODEX_THREAD,
        command=THREAD_RUN_COMMAND,
        cwd=companion.cwd,
        workspace_id=workspace_id,
    )
    await store.upsert_thread_meta(thread_id, ThreadMetaPatch(last_seen_at=now_iso()))
    if workspace_id is not None:
        await store.attach_thread(workspace_id, thread_id)

    relay = TurnRelay(runs, run_id, thread_id)
    unsubscribe = companion.subscribe(relay.on_message)

    async def _consume() -> None:
        try:
            await relay.consume()
        finally:
            unsubscribe()

    runs.background.spawn_detached(_consume(), name=f"turn-{run_id}")

    try:
        await companion.request("thread/resume", {"threadId": thread_id})
        result = await companion.request(
            "turn/start",
            {
                "threadId": thread_id,
                "input": [{"type": "text", "text": text}],
                "approvalPolicy": "never",
            },
        )
    except CompanionError as exc:
        logger.warning("Turn for thread %s failed to start: %s", thread_id, exc)
        unsubscribe()
        relay.abort()
        await runs.finalize_external_run(run_id, TURN_FAILED_EXIT_CODE, str(exc))
        return run_id

    relay.begin(extract_result_turn_id(result))
    logger.info("Turn %s started on thread %s (run %s)", relay.turn_id, thread_id, run_id)
    return run_id
