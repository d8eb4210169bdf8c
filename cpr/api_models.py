from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field(..., description="ok|starting")


class ControllerCounters(BaseModel):
    reconciles: int = 0
    converged: int = 0
    requeue_after: int = 0
    requeued: int = 0
    fatal: int = 0
    dropped: int = 0


class ControllerStatus(BaseModel):
    kind: str = Field(..., description="Parent kind this controller reconciles")
    running: bool
    workers: int = Field(..., ge=1)
    queue_depth: int = Field(..., ge=0, description="Keys ready to be processed")
    processing: int = Field(..., ge=0, description="Keys being reconciled right now")
    delayed: int = Field(..., ge=0, description="Keys waiting for a scheduled requeue")
    counters: ControllerCounters


class OwnerSummary(BaseModel):
    kind: str
    name: str
    uid: str


class ObjectSummary(BaseModel):
    kind: str
    namespace: str
    name: str
    uid: str | None = None
    resource_version: int | None = None
    generation: int = 0
    observed_generation: int | None = None
    ready: str | None = Field(None, description="Status of the Ready condition: True|False|Unknown")
    controller: OwnerSummary | None = None


class EventOut(BaseModel):
    id: int
    ts: str
    type: str = Field(..., description="Normal|Warning")
    kind: str
    namespace: str
    name: str
    reason: str
    message: str


class ResyncResponse(BaseModel):
    queued: int = Field(..., ge=0)
