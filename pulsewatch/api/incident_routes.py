"""Incident API routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..incidents.models import IncidentStatus, Severity

logger = logging.getLogger(__name__)

incident_router = APIRouter(prefix="/incidents", tags=["incidents"])


class UpdateIncidentBody(BaseModel):
    title: str | None = None
    status: IncidentStatus | None = None
    severity: Severity | None = None
    details: str | None = None


class ResolveBody(BaseModel):
    message: str | None = None


class EventBody(BaseModel):
    message: str


@incident_router.get("")
def list_incidents(
    request: Request, page: int = 1, limit: int = 10, status: IncidentStatus | None = None,
) -> dict[str, Any]:
    listing = request.app.state.lifecycle.list_all(page, limit, status)
    listing["incidents"] = [i.to_dict() for i in listing["incidents"]]
    return listing


@incident_router.get("/active")
def active_incidents(request: Request) -> list[dict[str, Any]]:
    return [i.to_dict() for i in request.app.state.lifecycle.active()]


@incident_router.get("/metrics")
def incident_metrics(request: Request) -> dict[str, Any]:
    m = request.app.state.lifecycle.metrics()
    return {"total": m.total, "active": m.active, "resolved": m.resolved, "mttr": m.mttr}


@incident_router.get("/history")
def incident_history(request: Request, days: int = 30) -> list[dict[str, Any]]:
    return request.app.state.lifecycle.history(days)


@incident_router.get("/{incident_id}")
def get_incident(incident_id: str, request: Request) -> dict[str, Any]:
    incident, events = request.app.state.lifecycle.get(incident_id)
    data = incident.to_dict()
    data["events"] = [e.to_dict() for e in events]
    return data


@incident_router.patch("/{incident_id}")
async def update_incident(
    incident_id: str, body: UpdateIncidentBody, request: Request,
) -> dict[str, Any]:
    try:
        incident = await request.app.state.lifecycle.update(
            incident_id, **body.model_dump(exclude_none=True),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return incident.to_dict()


@incident_router.post("/{incident_id}/resolve")
async def resolve_incident(
    incident_id: str, request: Request, body: ResolveBody | None = None,
) -> dict[str, Any]:
    message = body.message if body else None
    incident = await request.app.state.lifecycle.resolve(incident_id, message)
    return incident.to_dict()


@incident_router.post("/{incident_id}/events", status_code=201)
def add_event(incident_id: str, body: EventBody, request: Request) -> dict[str, Any]:
    return request.app.state.lifecycle.add_event(incident_id, body.message).to_dict()
