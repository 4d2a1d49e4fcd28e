"""
incidents.py — Incident records and escalation into alerts.

An incident starts ``reported`` with a one-entry status history. Status
changes append to the history; responder actions append to the response
log. Escalation builds an alert from the incident:

    title        "INCIDENT ALERT: {incident.title}"
    message      supplied message, else the incident description
    severity     incident severity
    attachments  incident attachments
    metadata     {"incidentId": id, "location": location}

and links both records (``alert.from_incident`` and
``incident.related_alert_id``).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from backend.app.alerts.alert_service import AlertLocks
from backend.app.alerts.broadcaster import RealtimeBroadcaster
from backend.app.alerts.models import (
    Alert,
    Incident,
    IncidentResponse,
    IncidentStatus,
    Severity,
    StatusChange,
)
from backend.app.alerts.storage import Storage
from backend.app.core.errors import IncidentNotFound, ValidationError

logger = logging.getLogger(__name__)

_UPDATABLE = {"title", "description", "location", "severity", "attachments"}

_SORTABLE = {"reported_at", "updated_at", "title", "severity", "status"}


def _validate_incident(data: Mapping[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    clean: Dict[str, Any] = {}

    for name in ("title", "description"):
        if name not in data and partial:
            continue
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            errors[name] = f"{name.capitalize()} is required"
        else:
            clean[name] = value

    if "severity" in data or not partial:
        try:
            clean["severity"] = Severity(data.get("severity"))
        except ValueError:
            errors["severity"] = "Severity must be one of: " + ", ".join(s.value for s in Severity)

    if "location" in data:
        location = data["location"]
        if location is not None and not isinstance(location, str):
            errors["location"] = "Location must be a string"
        else:
            clean["location"] = location

    if "attachments" in data:
        attachments = data["attachments"]
        if not isinstance(attachments, list) or not all(isinstance(a, str) for a in attachments):
            errors["attachments"] = "Attachments must be a list of strings"
        else:
            clean["attachments"] = list(attachments)

    if errors:
        raise ValidationError("Invalid incident data", errors=errors)
    return clean


class IncidentService:
    """Incident CRUD, status workflow, responses and alert escalation."""

    def __init__(
        self,
        storage: Storage,
        broadcaster: RealtimeBroadcaster,
        lifecycle=None,
        *,
        locks: Optional[AlertLocks] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.storage = storage
        self.broadcaster = broadcaster
        # AlertLifecycleManager; only needed for escalation
        self.lifecycle = lifecycle
        # Keyed by incident id; every read-modify-write of an incident holds its lock
        self.locks = locks or AlertLocks()
        self.clock = clock

    async def _get_or_raise(self, incident_id: int) -> Incident:
        incident = await self.storage.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    # ── CRUD ──

    async def create(self, data: Mapping[str, Any], actor_id: int) -> Incident:
        clean = _validate_incident(data)
        now = self.clock()
        incident = Incident(
            reported_by=actor_id,
            reported_at=now,
            updated_at=now,
            status_history=[StatusChange(IncidentStatus.REPORTED, actor_id, "Incident reported", now)],
            **clean,
        )
        incident = await self.storage.insert_incident(incident)
        logger.info(
            "Incident %d reported by %d: %s", incident.id, actor_id, incident.title,
            extra={"incident_id": incident.id},
        )
        await self.broadcaster.incident_created(incident)
        return incident

    async def get(self, incident_id: int) -> Incident:
        return await self._get_or_raise(incident_id)

    async def list(
        self,
        *,
        status: Optional[IncidentStatus] = None,
        limit: int = 10,
        sort_by: str = "reported_at",
        sort_order: str = "desc",
    ) -> List[Incident]:
        if sort_by not in _SORTABLE:
            raise ValidationError(f"Cannot sort by {sort_by}", field="sort_by")
        incidents = await self.storage.list_incidents(status=status)
        incidents.sort(key=lambda i: (getattr(i, sort_by), i.id), reverse=sort_order.lower() == "desc")
        return incidents[: max(limit, 0)]

    async def update(self, incident_id: int, patch: Mapping[str, Any], actor_id: int) -> Incident:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValidationError(
                "Unknown incident fields",
                errors={name: "Field cannot be updated" for name in sorted(unknown)},
            )
        clean = _validate_incident(patch, partial=True)

        async with self.locks(incident_id):
            incident = await self._get_or_raise(incident_id)
            for name, value in clean.items():
                setattr(incident, name, value)
            incident.updated_at = self.clock()
            incident = await self.storage.save_incident(incident)

        logger.info("Incident %d updated by %d", incident_id, actor_id, extra={"incident_id": incident_id})
        await self.broadcaster.incident_updated(incident)
        return incident

    async def update_status(
        self, incident_id: int, status: Any, actor_id: int, notes: Optional[str] = None,
    ) -> Incident:
        try:
            new_status = IncidentStatus(status)
        except ValueError:
            raise ValidationError(
                "Status must be one of: " + ", ".join(s.value for s in IncidentStatus),
                field="status",
            ) from None

        async with self.locks(incident_id):
            incident = await self._get_or_raise(incident_id)
            now = self.clock()
            incident.status = new_status
            incident.updated_at = now
            incident.status_history.append(StatusChange(new_status, actor_id, notes or "", now))
            incident = await self.storage.save_incident(incident)

        logger.info(
            "Incident %d → %s by %d", incident_id, new_status.value, actor_id,
            extra={"incident_id": incident_id},
        )
        await self.broadcaster.incident_status_updated(incident, actor_id)
        return incident

    async def add_response(
        self, incident_id: int, action: Any, actor_id: int, notes: Optional[str] = None,
    ) -> Incident:
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("Action is required", field="action")

        async with self.locks(incident_id):
            incident = await self._get_or_raise(incident_id)
            now = self.clock()
            incident.responses.append(IncidentResponse(action, actor_id, notes or "", now))
            incident.updated_at = now
            incident = await self.storage.save_incident(incident)

        logger.info(
            "Response '%s' added to incident %d by %d", action, incident_id, actor_id,
            extra={"incident_id": incident_id},
        )
        await self.broadcaster.incident_response_added(incident, actor_id)
        return incident

    async def delete(self, incident_id: int) -> None:
        async with self.locks(incident_id):
            await self._get_or_raise(incident_id)
            await self.storage.delete_incident(incident_id)
        self.locks.discard(incident_id)
        logger.info("Incident %d deleted", incident_id, extra={"incident_id": incident_id})
        await self.broadcaster.incident_deleted(incident_id)

    # ── Escalation ──

    async def create_alert_from_incident(
        self,
        incident_id: int,
        alert_request: Mapping[str, Any],
        actor_id: int,
    ) -> Dict[str, Any]:
        """
        Escalate an incident into a dispatched alert.

        The incident lock is not held during dispatch, so responders can
        keep logging actions; the link is written onto a fresh read.

        Returns
        -------
        dict
            ``{"alert": Alert, "incident": Incident}`` with both records linked.
        """
        errors: Dict[str, str] = {}
        channels = alert_request.get("channels")
        if not isinstance(channels, (list, tuple)) or not channels:
            errors["channels"] = "At least one notification channel is required"
        targeting = alert_request.get("targeting")
        if not isinstance(targeting, dict):
            errors["targeting"] = "Targeting information is required"
        if errors:
            raise ValidationError("Invalid escalation request", errors=errors)

        source = await self._get_or_raise(incident_id)

        alert_data = {
            "title": f"INCIDENT ALERT: {source.title}",
            "message": alert_request.get("message") or source.description,
            "severity": source.severity.value,
            "channels": list(channels),
            "targeting": dict(targeting),
            "attachments": list(source.attachments),
            "metadata": {"incidentId": source.id, "location": source.location},
        }
        alert: Alert = await self.lifecycle.create(alert_data, actor_id, from_incident=source.id)

        async with self.locks(incident_id):
            incident = await self.storage.get_incident(incident_id)
            if incident is None:
                logger.warning(
                    "Incident %d was deleted while alert %d was being sent", incident_id, alert.id,
                    extra={"incident_id": incident_id, "alert_id": alert.id},
                )
                raise IncidentNotFound(incident_id)
            incident.related_alert_id = alert.id
            incident.updated_at = self.clock()
            incident = await self.storage.save_incident(incident)

        logger.info(
            "Incident %d escalated to alert %d", incident_id, alert.id,
            extra={"incident_id": incident_id, "alert_id": alert.id},
        )
        await self.broadcaster.incident_updated(incident)
        return {"alert": alert, "incident": incident}
