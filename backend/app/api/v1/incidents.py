"""
FastAPI routes: incident reporting, workflow and escalation.

    POST   /api/v1/incidents                  — report an incident
    GET    /api/v1/incidents                  — list incidents
    GET    /api/v1/incidents/{id}             — fetch one incident
    PUT    /api/v1/incidents/{id}             — update details
    DELETE /api/v1/incidents/{id}             — delete (admin)
    PUT    /api/v1/incidents/{id}/status      — change status
    POST   /api/v1/incidents/{id}/responses   — log a responder action
    POST   /api/v1/incidents/{id}/alert       — escalate into an alert
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.alerts.models import Actor, IncidentStatus
from backend.app.api.deps import (
    ADMIN_ONLY,
    STAFF,
    AlertServices,
    get_actor,
    get_services,
    require_roles,
)
from backend.app.api.schemas import (
    IncidentAlertRequest,
    IncidentCreateRequest,
    IncidentResponseRequest,
    IncidentStatusRequest,
    IncidentUpdateRequest,
)
from backend.app.core.config import settings

router = APIRouter(prefix="/api/v1/incidents", tags=["incidents"])


@router.post("", status_code=201, summary="Report an incident")
async def create_incident(
    request: IncidentCreateRequest,
    actor: Actor = Depends(get_actor),
    services: AlertServices = Depends(get_services),
):
    incident = await services.incidents.create(request.model_dump(exclude_unset=True), actor.id)
    return {"message": "Incident reported successfully.", "incident": incident.to_dict()}


@router.get("", summary="List incidents")
async def list_incidents(
    status: Optional[IncidentStatus] = Query(None),
    limit: int = Query(settings.DEFAULT_LIST_LIMIT, ge=1, le=500),
    sort_by: str = Query("reported_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    incidents = await services.incidents.list(
        status=status, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )
    return {"count": len(incidents), "incidents": [i.to_dict() for i in incidents]}


@router.get("/{incident_id}", summary="Get an incident")
async def get_incident(
    incident_id: int,
    actor: Actor = Depends(get_actor),
    services: AlertServices = Depends(get_services),
):
    incident = await services.incidents.get(incident_id)
    return {"incident": incident.to_dict()}


@router.put("/{incident_id}", summary="Update an incident")
async def update_incident(
    incident_id: int,
    request: IncidentUpdateRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    incident = await services.incidents.update(
        incident_id, request.model_dump(exclude_unset=True), actor.id,
    )
    return {"message": "Incident updated successfully.", "incident": incident.to_dict()}


@router.delete("/{incident_id}", summary="Delete an incident")
async def delete_incident(
    incident_id: int,
    actor: Actor = Depends(require_roles(*ADMIN_ONLY)),
    services: AlertServices = Depends(get_services),
):
    await services.incidents.delete(incident_id)
    return {"message": "Incident deleted successfully.", "incident_id": incident_id}


@router.put("/{incident_id}/status", summary="Change incident status")
async def update_incident_status(
    incident_id: int,
    request: IncidentStatusRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    incident = await services.incidents.update_status(
        incident_id, request.status, actor.id, request.notes,
    )
    return {"message": "Incident status updated successfully.", "incident": incident.to_dict()}


@router.post("/{incident_id}/responses", status_code=201, summary="Log a response action")
async def add_incident_response(
    incident_id: int,
    request: IncidentResponseRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    incident = await services.incidents.add_response(
        incident_id, request.action, actor.id, request.notes,
    )
    return {"message": "Response added successfully.", "incident": incident.to_dict()}


@router.post("/{incident_id}/alert", status_code=201, summary="Escalate an incident into an alert")
async def create_alert_from_incident(
    incident_id: int,
    request: IncidentAlertRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    result = await services.incidents.create_alert_from_incident(
        incident_id, request.model_dump(exclude_unset=True), actor.id,
    )
    return {
        "message": "Alert created from incident successfully.",
        "alert": result["alert"].to_dict(),
        "incident": result["incident"].to_dict(),
    }
