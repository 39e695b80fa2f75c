"""Run, run-event and live stream event models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from godex.control_plane.models.enums import RunStatus, RunStream, StreamEventType

# -- Persisted ---------------------------------------------------------------


class Run(BaseModel):
    """One observable execution with a streamed event log and an exit code."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str | None = None
    type: str
    command: str
    cwd: str
    status: RunStatus = RunStatus.RUNNING
    exit_code: int | None = None
    created_at: str
    updated_at: str
    last_snippet: str | None = None


class RunCreate(BaseModel):
    id: str
    workspace_id: str | None = None
    type: str
    command: str
    cwd: str


class RunPatch(BaseModel):
    status: RunStatus | None = None
    exit_code: int | None = None
    last_snippet: str | None = None


class RunEvent(BaseModel):
    """A raw output fragment.  ``seq`` is 1-based and gap-free per run."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    seq: int
    ts: str
    stream: RunStream
    chunk: str


# -- Live --------------------------------------------------------------------


class RunFinal(BaseModel):
    """Terminal event payload, delivered exactly once per run."""

    run_id: str
    ts: str
    exit_code: int | None = None


class RunStreamEvent(BaseModel):
    """Envelope handed to run subscribers (and serialised onto SSE)."""

    event_type: StreamEventType
    run_id: str
    chunk: RunEvent | None = None
    final: RunFinal | None = None

    @classmethod
    def for_chunk(cls, event: RunEvent) -> RunStreamEvent:
        return cls(event_type=StreamEventType.CHUNK, run_id=event.run_id, chunk=event)

    @classmethod
    def for_final(cls, final: RunFinal) -> RunStreamEvent:
        return cls(event_type=StreamEventType.FINAL, run_id=final.run_id, final=final)

    def to_sse(self) -> dict[str, str]:
        """Render as an sse-starlette message dict."""
        payload = self.chunk if self.event_type == StreamEventType.CHUNK else self.final
        message = {"event": self.event_type.value, "data": payload.model_dump_json() if payload else "{}"}
        if self.chunk is not None:
            message["id"] = str(self.chunk.seq)
        return message
