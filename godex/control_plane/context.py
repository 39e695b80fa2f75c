"""Runtime run context.

Holds the in-flight bookkeeping for one run between ``start`` and
``finalize``: the needs-input tracker, the last snippet and the finished
guard.  Created by the run manager, registered in the ``RunRegistry`` and
discarded once the run is final.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from godex.control_plane.execution.output import NeedsInputTracker
from godex.control_plane.models.enums import RunType


@dataclass
class RunContext:
    """In-flight state for a single run (managed or external)."""

    # -- Identity --------------------------------------------------------------
    run_id: str
    run_type: str
    workspace_id: str | None = None

    # -- Classification --------------------------------------------------------
    external: bool = False
    """External runs are fed by another component (e.g. a companion turn)."""

    started_at: float = 0.0
    """Clock reading at start; used for the notification duration gate."""

    # -- Live state ------------------------------------------------------------
    tracker: NeedsInputTracker = field(init=False)
    last_snippet: str | None = None
    finished: bool = False

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    """Serialises append + broadcast so subscribers see events in seq order."""

    def __post_init__(self) -> None:
        self.tracker = NeedsInputTracker(conversational=self.run_type == RunType.MESSAGE)
