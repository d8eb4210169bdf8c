from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query, status

from .api_models import (
    ControllerStatus,
    EventOut,
    HealthResponse,
    ObjectSummary,
    OwnerSummary,
    ResyncResponse,
)
from .errors import ReconcileError
from .objects import Resource, get_condition
from .ownership import get_controller_reference
from .reconciler import Controller
from .settings import settings
from .store import Store


def summarize(obj: Resource) -> ObjectSummary:
    ready = get_condition(obj.status, "Ready")
    ref = get_controller_reference(obj)
    return ObjectSummary(
        kind=obj.kind,
        namespace=obj.namespace,
        name=obj.name,
        uid=obj.uid,
        resource_version=obj.resource_version,
        generation=obj.generation,
        observed_generation=obj.status.get("observedGeneration"),
        ready=ready.get("status") if ready else None,
        controller=OwnerSummary(kind=ref.kind, name=ref.name, uid=ref.uid) if ref else None,
    )


def create_app(store: Store, controller: Controller, start_controller: bool | None = None) -> FastAPI:
    """HTTP surface for inspecting a running controller.

    With ``start_controller`` the controller follows the app's lifecycle:
    started on startup, stopped (with the configured grace period) on shutdown.
    """
    if start_controller is None:
        start_controller = settings.start_controller

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if start_controller:
            controller.start()
        try:
            yield
        finally:
            if start_controller:
                controller.stop(settings.shutdown_grace_s)

    app = FastAPI(title="Control-Plane Reconciler", lifespan=lifespan)
    app.state.store = store
    app.state.controller = controller

    @app.get("/healthz", response_model=HealthResponse)
    def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/readyz", response_model=HealthResponse)
    def readyz() -> HealthResponse:
        if not controller.running:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="controller not running")
        return HealthResponse(status="ok")

    @app.get("/controller", response_model=ControllerStatus)
    def controller_status() -> ControllerStatus:
        return ControllerStatus(**controller.stats())

    @app.get("/objects/{kind}", response_model=list[ObjectSummary])
    def list_objects(kind: str, namespace: str | None = None) -> list[ObjectSummary]:
        try:
            objs = store.list(kind, namespace=namespace)
        except ReconcileError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return [summarize(o) for o in objs]

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(settings.event_limit, ge=1, le=1000)) -> list[EventOut]:
        return [EventOut(**e) for e in store.list_events(limit=limit)]

    @app.post("/resync", response_model=ResyncResponse, status_code=status.HTTP_202_ACCEPTED)
    def resync() -> ResyncResponse:
        return ResyncResponse(queued=controller.resync())

    return app
