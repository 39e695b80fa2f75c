"""Workspace data model.

A workspace is a tracked local repository checkout with a derived status and
a notification policy.  Both enum fields are normalised on read so that rows
written by older releases (or with the columns missing) always validate.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from godex.control_plane.models.enums import (
    DEFAULT_NOTIFY_POLICY,
    LEGACY_NOTIFY_POLICIES,
    NotifyPolicy,
    WorkspaceStatus,
)


def normalize_notify_policy(value: Any) -> NotifyPolicy:
    """Map missing, legacy or unknown values onto a valid policy."""
    if isinstance(value, str):
        if value in LEGACY_NOTIFY_POLICIES:
            return LEGACY_NOTIFY_POLICIES[value]
        try:
            return NotifyPolicy(value)
        except ValueError:
            return DEFAULT_NOTIFY_POLICY
    return DEFAULT_NOTIFY_POLICY


def normalize_workspace_status(value: Any) -> WorkspaceStatus:
    try:
        return WorkspaceStatus(value)
    except ValueError:
        return WorkspaceStatus.IDLE


class Workspace(BaseModel):
    """Workspace row, identical for both store backends."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    repo_path: str
    status: WorkspaceStatus = WorkspaceStatus.IDLE
    notify_policy: NotifyPolicy = DEFAULT_NOTIFY_POLICY
    default_thread_id: str | None = None
    test_command_override: str | None = None
    created_at: str
    updated_at: str

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> WorkspaceStatus:
        return normalize_workspace_status(value)

    @field_validator("notify_policy", mode="before")
    @classmethod
    def _notify_policy(cls, value: Any) -> NotifyPolicy:
        return normalize_notify_policy(value)


class WorkspacePatch(BaseModel):
    """Partial update; stores apply ``model_dump(exclude_unset=True)``."""

    title: str | None = None
    repo_path: str | None = None
    status: WorkspaceStatus | None = None
    notify_policy: NotifyPolicy | None = None
    default_thread_id: str | None = None
    test_command_override: str | None = None
