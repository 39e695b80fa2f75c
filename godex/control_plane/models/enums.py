"""Shared enumerations used across the control plane."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class WorkspaceStatus(StrEnum):
    """Derived workspace status, rewritten each time a run finishes."""

    IDLE = "idle"
    FAILED = "failed"
    NEEDS_INPUT = "needs_input"


class NotifyPolicy(StrEnum):
    OFF = "off"
    NEEDS_INPUT_FAILED = "needs_input+failed"
    ALL = "all"


# Value written by older releases before the policy was renamed.
LEGACY_NOTIFY_POLICIES: dict[str, NotifyPolicy] = {
    "needs_input_failed": NotifyPolicy.NEEDS_INPUT_FAILED,
}

DEFAULT_NOTIFY_POLICY = NotifyPolicy.NEEDS_INPUT_FAILED


# -- Run ---------------------------------------------------------------------


class RunStatus(StrEnum):
    RUNNING = "running"
    DONE = "done"


class RunStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


class RunType:
    """Well-known run type tags.  ``Run.type`` itself stays a free string."""

    MESSAGE = "message"
    GIT_STATUS = "git_status"
    GIT_DIFF = "git_diff"
    TEST = "test"
    BOOTSTRAP = "bootstrap"
    CODEX_THREAD = "codex_thread"


# Exit code written by the startup sweep for runs orphaned by a restart.
STALE_RUN_EXIT_CODE = -1

# Exit code for runs that could not be launched at all.
LAUNCH_FAILURE_EXIT_CODE = 127


# -- Events ------------------------------------------------------------------


class StreamEventType(StrEnum):
    """Live event kinds delivered to run subscribers."""

    CHUNK = "chunk"
    FINAL = "final"


# -- Companion ---------------------------------------------------------------


class CompanionState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"
