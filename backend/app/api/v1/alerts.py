"""
FastAPI routes: alert lifecycle and acknowledgments.

Provides endpoints to:
    POST   /api/v1/alerts                          — create (and dispatch) an alert
    GET    /api/v1/alerts                          — list alerts
    GET    /api/v1/alerts/analytics                — aggregate counts (admin)
    GET    /api/v1/alerts/{id}                     — fetch one alert
    PUT    /api/v1/alerts/{id}                     — partial update
    DELETE /api/v1/alerts/{id}                     — delete (admin)
    POST   /api/v1/alerts/{id}/send                — dispatch a draft/pending alert
    POST   /api/v1/alerts/{id}/cancel              — cancel within the window
    GET    /api/v1/alerts/{id}/acknowledgments     — list acknowledgments
    POST   /api/v1/alerts/{id}/acknowledgments     — acknowledge receipt
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.alerts.models import Actor, AlertStatus, Severity
from backend.app.api.deps import (
    ADMIN_ONLY,
    STAFF,
    AlertServices,
    get_actor,
    get_services,
    require_roles,
)
from backend.app.api.schemas import AcknowledgeRequest, AlertCreateRequest, AlertUpdateRequest
from backend.app.core.config import settings

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.post(
    "",
    status_code=201,
    summary="Create an alert",
    description=(
        "Without an explicit status the alert is dispatched immediately to all "
        "targeted recipients over their opted-in channels."
    ),
)
async def create_alert(
    request: AlertCreateRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.create(request.model_dump(exclude_unset=True), actor.id)
    message = (
        "Alert created and sent successfully."
        if alert.status is AlertStatus.SENT
        else f"Alert created with status {alert.status.value}."
    )
    return {"message": message, "alert": alert.to_dict()}


@router.get("", summary="List alerts")
async def list_alerts(
    status: Optional[AlertStatus] = Query(None),
    limit: int = Query(settings.DEFAULT_LIST_LIMIT, ge=1, le=500),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    actor: Actor = Depends(get_actor),
    services: AlertServices = Depends(get_services),
):
    alerts = await services.lifecycle.list(
        status=status, limit=limit, sort_by=sort_by, sort_order=sort_order,
    )
    return {"count": len(alerts), "alerts": [a.to_dict() for a in alerts]}


@router.get("/analytics", summary="Alert analytics")
async def alert_analytics(
    status: Optional[AlertStatus] = Query(None),
    severity: Optional[Severity] = Query(None),
    created_after: Optional[datetime] = Query(None),
    created_before: Optional[datetime] = Query(None),
    actor: Actor = Depends(require_roles(*ADMIN_ONLY)),
    services: AlertServices = Depends(get_services),
):
    return await services.lifecycle.get_analytics(
        status=status,
        severity=severity,
        created_after=created_after,
        created_before=created_before,
    )


@router.get("/{alert_id}", summary="Get an alert")
async def get_alert(
    alert_id: int,
    actor: Actor = Depends(get_actor),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.get(alert_id)
    return {"alert": alert.to_dict()}


@router.put("/{alert_id}", summary="Update an alert")
async def update_alert(
    alert_id: int,
    request: AlertUpdateRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.update(alert_id, request.model_dump(exclude_unset=True), actor.id)
    return {"message": "Alert updated successfully.", "alert": alert.to_dict()}


@router.delete("/{alert_id}", summary="Delete an alert")
async def delete_alert(
    alert_id: int,
    actor: Actor = Depends(require_roles(*ADMIN_ONLY)),
    services: AlertServices = Depends(get_services),
):
    await services.lifecycle.delete(alert_id)
    return {"message": "Alert deleted successfully.", "alert_id": alert_id}


@router.post("/{alert_id}/send", summary="Dispatch a draft or pending alert")
async def send_alert(
    alert_id: int,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.send(alert_id, actor.id)
    return {"message": f"Alert {alert.status.value}.", "alert": alert.to_dict()}


@router.post("/{alert_id}/cancel", summary="Cancel a sent alert")
async def cancel_alert(
    alert_id: int,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.cancel(alert_id, actor.id)
    return {"message": "Alert cancelled successfully.", "alert": alert.to_dict()}


@router.get("/{alert_id}/acknowledgments", summary="List acknowledgments")
async def list_acknowledgments(
    alert_id: int,
    actor: Actor = Depends(get_actor),
    services: AlertServices = Depends(get_services),
):
    acks = await services.acknowledgments.get_acknowledgments(alert_id)
    return {"alert_id": alert_id, "acknowledgments": [a.to_dict() for a in acks]}


@router.post("/{alert_id}/acknowledgments", summary="Acknowledge an alert")
async def acknowledge_alert(
    alert_id: int,
    request: Optional[AcknowledgeRequest] = None,
    actor: Actor = Depends(get_actor),
    services: AlertServices = Depends(get_services),
):
    notes = request.notes if request else None
    result = await services.acknowledgments.acknowledge(alert_id, actor.id, notes)
    return {
        "message": "Alert acknowledged successfully.",
        "acknowledgment": result["acknowledgment"].to_dict(),
        "stats": result["stats"],
    }
