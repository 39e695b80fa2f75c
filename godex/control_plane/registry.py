"""Live run registry.

Maps run ids to the ``RunContext`` of every run that has started but not
yet been finalized.  Only this process can finish those runs; after a
restart the store sweep marks whatever was left ``running`` as stale.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from godex.control_plane.context import RunContext


class ShuttingDownError(RuntimeError):
    """No new runs are accepted once shutdown has begun."""


class RunRegistry:
    """Active runs plus the shutdown gate.

    ``begin_shutdown`` closes the gate for new runs; ``wait_until_drained``
    lets the lifespan wait for the ones already in flight.
    """

    def __init__(self) -> None:
        self._active: dict[str, RunContext] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False

    def register(self, ctx: RunContext) -> None:
        if self._closing:
            raise ShuttingDownError
        self._active[ctx.run_id] = ctx
        self._idle.clear()
        logger.debug("Registry: +{} ({}, {} active)", ctx.run_id, ctx.run_type, len(self._active))

    def unregister(self, run_id: str) -> RunContext | None:
        ctx = self._active.pop(run_id, None)
        if ctx is not None:
            logger.debug("Registry: -{} ({} active)", run_id, len(self._active))
        if not self._active:
            self._idle.set()
        return ctx

    def get(self, run_id: str) -> RunContext | None:
        return self._active.get(run_id)

    def active_ids(self) -> list[str]:
        return list(self._active)

    @property
    def active_count(self) -> int:
        return len(self._active)

    # -- Shutdown --------------------------------------------------------------

    def begin_shutdown(self) -> None:
        self._closing = True
        logger.info("Registry: closed to new runs ({} active)", len(self._active))
        if not self._active:
            self._idle.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._closing

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """``True`` once no run is active, ``False`` if *timeout* expires first."""
        if not self._active:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: {} runs still active after {}s: {}",
                len(self._active),
                timeout,
                self.active_ids(),
            )
            return False
        return True
