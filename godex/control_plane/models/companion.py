"""Companion process status and spawn description."""

from __future__ import annotations

from pydantic import BaseModel, Field

from godex.control_plane.models.enums import CompanionState


class CompanionStatus(BaseModel):
    state: CompanionState = CompanionState.STOPPED
    pid: int | None = None
    last_error: str | None = None
    restarting: bool = False


class ClientInfo(BaseModel):
    """Identity sent in the ``initialize`` handshake."""

    name: str = "godex"
    title: str = "godex"
    version: str = "0.1.0"


class SpawnSpec(BaseModel):
    command: str
    args: list[str] = Field(default_factory=list)
    cwd: str

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]
