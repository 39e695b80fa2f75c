"""Local annotations over threads owned by the companion process.

Thread identifiers are minted by the companion; this service never creates
threads, it only remembers titles, pins and workspace links for them.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ThreadMeta(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    thread_id: str
    title_override: str | None = None
    last_seen_at: str | None = None
    pinned: bool = False
    archived: bool = False


class ThreadMetaPatch(BaseModel):
    title_override: str | None = None
    last_seen_at: str | None = None
    pinned: bool | None = None
    archived: bool | None = None


class WorkspaceThread(BaseModel):
    """Many-to-many link between a workspace and a thread."""

    model_config = ConfigDict(from_attributes=True)

    workspace_id: str
    thread_id: str
    created_at: str


class ThreadSummary(BaseModel):
    """Remote thread listing entry merged with local annotations."""

    thread_id: str
    title: str
    updated_at: str | None = None
    summary: str | None = None
    pinned: bool = False
    archived: bool = False
    last_seen_at: str | None = None
    attached_workspace_ids: list[str] = Field(default_factory=list)
