"""
broadcaster.py — Realtime lifecycle event publication.

Scopes:
    global        room=None
    role rooms    "admin", "operator"
    private       "user-{id}"

    Event                    Scope                      Payload
    ─────────────────────    ───────────────────────    ─────────────────────────────
    newAlert                 global                     alert[, fromIncident]
    personalAlert            user-{recipient}           alert[, fromIncident]
    alertCancelled           global                     alertId
    alertAcknowledged        global                     alertId, userId, timestamp
    newIncident              admin, operator            incident
    incidentUpdated          admin, operator            incident
    incidentStatusUpdated    admin, operator, reporter  incident, status, updatedBy
    incidentResponseAdded    admin, operator, reporter  incident, response, addedBy
    incidentDeleted          admin, operator            incidentId
    templateCreated/Updated  admin, operator            id, name, type, category
    templateDeleted          admin, operator            id, name

Publishing is fire-and-forget: events go out on background tasks, and a
failing transport is logged, never raised into the operation that
triggered it. Callers broadcast only after the state change has been
persisted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence, Set

from backend.app.alerts.models import Alert, Incident, NotificationTemplate, Recipient

logger = logging.getLogger(__name__)

STAFF_ROOMS = ("admin", "operator")


def user_room(user_id: int) -> str:
    return f"user-{user_id}"


class Publisher(Protocol):
    """Transport that delivers one event to one scope."""

    async def publish(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None: ...


class RealtimeBroadcaster:
    """
    Maps lifecycle events onto publisher scopes.

    Each event is handed to a background task so the operation that
    produced it returns without waiting on the transport. Tasks are kept
    in ``_pending`` until they finish; ``drain()`` waits for all of them.
    """

    def __init__(self, publisher: Publisher):
        self.publisher = publisher
        self._pending: Set[asyncio.Task] = set()

    async def emit(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        self._schedule(event, payload, (room,))

    async def emit_to_rooms(self, event: str, payload: Dict[str, Any], rooms: Iterable[str]) -> None:
        self._schedule(event, payload, tuple(rooms))

    async def drain(self) -> None:
        """Wait until every scheduled publish has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event: str, payload: Dict[str, Any], rooms: Sequence[Optional[str]]) -> None:
        task = asyncio.get_running_loop().create_task(
            self._publish(event, payload, rooms), name=f"broadcast:{event}",
        )
        self._pending.add(task)
        task.add_done_callback(self._finished)

    async def _publish(self, event: str, payload: Dict[str, Any], rooms: Sequence[Optional[str]]) -> None:
        # Rooms of one event are published in order; a failed room does not skip the rest
        for room in rooms:
            try:
                await self.publisher.publish(event, payload, room)
            except Exception as exc:
                logger.error(
                    "Broadcast of %s to %s failed: %s", event, room or "global", exc,
                    extra={"event": event, "room": room},
                )

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Broadcast task %s crashed: %s", task.get_name(), task.exception())

    # ── Alerts ──

    async def alert_created(self, alert: Alert, recipients: Iterable[Recipient] = ()) -> None:
        payload: Dict[str, Any] = {"alert": alert.to_dict()}
        if alert.from_incident is not None:
            payload["fromIncident"] = alert.from_incident
        await self.emit("newAlert", payload)
        for recipient in recipients:
            await self.emit("personalAlert", payload, user_room(recipient.id))

    async def alert_cancelled(self, alert_id: int) -> None:
        await self.emit("alertCancelled", {"alertId": alert_id})

    async def alert_acknowledged(self, alert_id: int, user_id: int, timestamp: datetime) -> None:
        await self.emit("alertAcknowledged", {
            "alertId": alert_id,
            "userId": user_id,
            "timestamp": timestamp.isoformat(),
        })

    # ── Incidents ──

    async def incident_created(self, incident: Incident) -> None:
        await self.emit_to_rooms("newIncident", {"incident": incident.to_dict()}, STAFF_ROOMS)

    async def incident_updated(self, incident: Incident) -> None:
        await self.emit_to_rooms("incidentUpdated", {"incident": incident.to_dict()}, STAFF_ROOMS)

    async def incident_status_updated(self, incident: Incident, actor_id: int) -> None:
        payload = {
            "incident": incident.to_dict(),
            "status": incident.status.value,
            "updatedBy": actor_id,
        }
        await self.emit_to_rooms("incidentStatusUpdated", payload, self._incident_rooms(incident, actor_id))

    async def incident_response_added(self, incident: Incident, actor_id: int) -> None:
        payload = {
            "incident": incident.to_dict(),
            "response": incident.responses[-1].to_dict() if incident.responses else None,
            "addedBy": actor_id,
        }
        await self.emit_to_rooms("incidentResponseAdded", payload, self._incident_rooms(incident, actor_id))

    async def incident_deleted(self, incident_id: int) -> None:
        await self.emit_to_rooms("incidentDeleted", {"incidentId": incident_id}, STAFF_ROOMS)

    @staticmethod
    def _incident_rooms(incident: Incident, actor_id: int):
        rooms = list(STAFF_ROOMS)
        # Reporter hears about changes made by someone else
        if incident.reported_by != actor_id:
            rooms.append(user_room(incident.reported_by))
        return rooms

    # ── Templates ──

    async def template_changed(self, event: str, template: NotificationTemplate) -> None:
        payload = {"id": template.id, "name": template.name}
        if event != "templateDeleted":
            payload.update(type=template.type, category=template.category)
        await self.emit_to_rooms(event, payload, STAFF_ROOMS)
