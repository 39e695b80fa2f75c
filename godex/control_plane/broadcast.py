"""Per-run live event fan-out.

Subscribers are plain callables invoked synchronously, in registration order,
from the coroutine that produced the event.  Nothing is buffered or replayed:
a subscriber only sees events broadcast after it subscribed.  Late joiners
replay history from the store.
"""

from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from godex.control_plane.models.run import RunStreamEvent

RunEventHandler = Callable[[RunStreamEvent], None]
Unsubscribe = Callable[[], None]


class RunBroadcaster:
    def __init__(self) -> None:
        # dict preserves insertion order; keys are opaque tokens so the same
        # handler may be subscribed twice.
        self._subscribers: dict[str, dict[int, RunEventHandler]] = {}
        self._next_token = 0

    def subscribe(self, run_id: str, handler: RunEventHandler) -> Unsubscribe:
        """Register *handler* for *run_id*.  The returned callable is idempotent."""
        token = self._next_token
        self._next_token += 1
        self._subscribers.setdefault(run_id, {})[token] = handler

        def unsubscribe() -> None:
            handlers = self._subscribers.get(run_id)
            if handlers is None:
                return
            handlers.pop(token, None)
            if not handlers:
                del self._subscribers[run_id]

        return unsubscribe

    def broadcast(self, event: RunStreamEvent) -> None:
        handlers = self._subscribers.get(event.run_id)
        if not handlers:
            return
        # Snapshot: handlers may unsubscribe while being called.
        for handler in list(handlers.values()):
            try:
                handler(event)
            except Exception:
                logger.exception("Run subscriber failed for run {} ({})", event.run_id, event.event_type)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, {}))
