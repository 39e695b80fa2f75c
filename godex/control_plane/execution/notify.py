"""Push notifications for finished runs.

``should_notify`` is the policy table; ``should_fire`` adds the transition
gate used at finalize.  Delivery goes through ``NtfyNotifier`` as a detached
task, so a slow or failing ntfy server never delays or breaks finalization.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from godex.control_plane.models.enums import NotifyPolicy, WorkspaceStatus

if TYPE_CHECKING:
    from godex.control_plane.settings import GodexSettings

logger = logging.getLogger(__name__)

DEFAULT_MIN_DURATION = 30.0


def should_notify(
    policy: NotifyPolicy,
    status: WorkspaceStatus,
    duration_sec: float,
    min_duration: float = DEFAULT_MIN_DURATION,
) -> bool:
    """Policy table: does a run ending in *status* warrant a notification?"""
    if policy == NotifyPolicy.OFF:
        return False
    if status in (WorkspaceStatus.FAILED, WorkspaceStatus.NEEDS_INPUT):
        return True
    if status == WorkspaceStatus.IDLE:
        return policy == NotifyPolicy.ALL and duration_sec >= min_duration
    return False


def should_fire(
    policy: NotifyPolicy,
    previous: WorkspaceStatus,
    current: WorkspaceStatus,
    duration_sec: float,
    min_duration: float = DEFAULT_MIN_DURATION,
) -> bool:
    """Notify only on a status change, or on an idle finish that passes the policy."""
    transitioned = previous != current
    return (transitioned or current == WorkspaceStatus.IDLE) and should_notify(
        policy, current, duration_sec, min_duration
    )


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Notification:
    workspace_id: str
    workspace_title: str
    status: WorkspaceStatus
    summary: str
    run_id: str | None = None


class Notifier(Protocol):
    async def send(self, notification: Notification) -> None: ...


class NtfyNotifier:
    """Publishes to an ntfy server using its JSON publishing endpoint.

    Disabled (``send`` is a no-op) unless both *url* and *topic* are set.
    """

    def __init__(
        self,
        url: str | None,
        topic: str | None,
        *,
        public_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/") if url else None
        self._topic = topic
        self._public_url = public_url.rstrip("/") if public_url else None
        self._client = client
        self._own_client = client is None
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: GodexSettings) -> NtfyNotifier:
        return cls(settings.ntfy_url, settings.ntfy_topic, public_url=settings.public_url)

    @property
    def enabled(self) -> bool:
        return bool(self._url and self._topic)

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "topic": self._topic,
            "title": f"{notification.workspace_title} · {notification.status}",
            "message": "\n".join([
                f"workspace: {notification.workspace_title}",
                f"status: {notification.status}",
                f"summary: {notification.summary or '(none)'}",
            ]),
            "tags": [_TAGS.get(notification.status, "information_source")],
        }
        if self._public_url:
            payload["click"] = f"{self._public_url}/workspaces/{notification.workspace_id}"
        return payload

    async def send(self, notification: Notification) -> None:
        if not self.enabled:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        response = await self._client.post(f"{self._url}/", json=self.build_payload(notification))
        response.raise_for_status()
        logger.info("Notification sent for workspace %s (%s)", notification.workspace_id, notification.status)

    async def aclose(self) -> None:
        if self._own_client and self._client is not None:
            await self._client.aclose()
            self._client = None


_TAGS = {
    WorkspaceStatus.FAILED: "x",
    WorkspaceStatus.NEEDS_INPUT: "question",
    WorkspaceStatus.IDLE: "white_check_mark",
}


# ---------------------------------------------------------------------------
# Detached work
# ---------------------------------------------------------------------------


class BackgroundTasks:
    """Owner of fire-and-forget tasks.

    ``spawn_detached`` never propagates the task's outcome to the caller:
    failures are logged here and discarded.  References are held until the
    task finishes so it cannot be garbage-collected mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn_detached(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Detached task %s failed: %s", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight detached tasks (shutdown and tests)."""
        if not self._tasks:
            return
        _done, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
