"""
storage.py — Storage interface consumed by the alert engine.

The engine never touches a database directly; every service receives a
:class:`Storage` through its constructor. Two implementations ship:

    InMemoryStorage    — process-local dicts, used for development and tests
    SqlAlchemyStorage  — async SQLAlchemy (see sql_storage.py)

Contract notes:
    • Reads return detached copies; mutating a returned object has no
      effect until it is written back with a ``save_*`` call.
    • ``insert_*`` assigns the integer id and returns the stored copy.
    • ``add_acknowledgment`` is add-if-absent and must be atomic per
      (alert_id, user_id). It returns False when the user already
      acknowledged.
"""

from __future__ import annotations

import abc
import asyncio
import itertools
from datetime import datetime
from typing import Dict, List, Optional

from backend.app.alerts.models import (
    Acknowledgment,
    Alert,
    AlertStatus,
    Incident,
    IncidentStatus,
    NotificationTemplate,
    Severity,
    User,
    UserRole,
)


class Storage(abc.ABC):
    """Persistence boundary for alerts, incidents, templates and users."""

    # ── Users ──
    @abc.abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]: ...

    @abc.abstractmethod
    async def list_users(self, role: Optional[UserRole] = None) -> List[User]: ...

    @abc.abstractmethod
    async def insert_user(self, user: User) -> User: ...

    # ── Alerts ──
    @abc.abstractmethod
    async def insert_alert(self, alert: Alert) -> Alert: ...

    @abc.abstractmethod
    async def get_alert(self, alert_id: int) -> Optional[Alert]: ...

    @abc.abstractmethod
    async def save_alert(self, alert: Alert) -> Alert: ...

    @abc.abstractmethod
    async def delete_alert(self, alert_id: int) -> bool: ...

    @abc.abstractmethod
    async def list_alerts(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[Severity] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Alert]: ...

    @abc.abstractmethod
    async def add_acknowledgment(self, alert_id: int, ack: Acknowledgment) -> bool: ...

    # ── Incidents ──
    @abc.abstractmethod
    async def insert_incident(self, incident: Incident) -> Incident: ...

    @abc.abstractmethod
    async def get_incident(self, incident_id: int) -> Optional[Incident]: ...

    @abc.abstractmethod
    async def save_incident(self, incident: Incident) -> Incident: ...

    @abc.abstractmethod
    async def delete_incident(self, incident_id: int) -> bool: ...

    @abc.abstractmethod
    async def list_incidents(self, *, status: Optional[IncidentStatus] = None) -> List[Incident]: ...

    # ── Templates ──
    @abc.abstractmethod
    async def insert_template(self, template: NotificationTemplate) -> NotificationTemplate: ...

    @abc.abstractmethod
    async def get_template(self, template_id: int) -> Optional[NotificationTemplate]: ...

    @abc.abstractmethod
    async def save_template(self, template: NotificationTemplate) -> NotificationTemplate: ...

    @abc.abstractmethod
    async def delete_template(self, template_id: int) -> bool: ...

    @abc.abstractmethod
    async def list_templates(
        self,
        *,
        type: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[NotificationTemplate]: ...

    async def close(self) -> None:
        """Release resources held by the backend."""


class InMemoryStorage(Storage):
    """Dict-backed storage. Not shared across processes."""

    def __init__(self) -> None:
        self._users: Dict[int, User] = {}
        self._alerts: Dict[int, Alert] = {}
        self._incidents: Dict[int, Incident] = {}
        self._templates: Dict[int, NotificationTemplate] = {}
        self._ids = {
            "user": itertools.count(1),
            "alert": itertools.count(1),
            "incident": itertools.count(1),
            "template": itertools.count(1),
        }
        self._ack_lock = asyncio.Lock()

    # ── Users ──

    async def get_user(self, user_id: int) -> Optional[User]:
        user = self._users.get(user_id)
        return _copy(user)

    async def list_users(self, role: Optional[UserRole] = None) -> List[User]:
        return [
            _copy(u) for u in self._users.values()
            if role is None or u.role == role
        ]

    async def insert_user(self, user: User) -> User:
        if user.id is None or user.id in self._users:
            user.id = next(self._ids["user"])
        self._users[user.id] = _copy(user)
        return _copy(user)

    # ── Alerts ──

    async def insert_alert(self, alert: Alert) -> Alert:
        alert.id = next(self._ids["alert"])
        self._alerts[alert.id] = alert.clone()
        return alert.clone()

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return alert.clone() if alert else None

    async def save_alert(self, alert: Alert) -> Alert:
        if alert.id not in self._alerts:
            raise KeyError(f"Alert {alert.id} does not exist")
        # Acknowledgments are owned by add_acknowledgment
        stored = alert.clone()
        stored.acknowledgments = list(self._alerts[alert.id].acknowledgments)
        self._alerts[alert.id] = stored
        return stored.clone()

    async def delete_alert(self, alert_id: int) -> bool:
        return self._alerts.pop(alert_id, None) is not None

    async def list_alerts(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[Severity] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Alert]:
        result = []
        for alert in self._alerts.values():
            if status is not None and alert.status != status:
                continue
            if severity is not None and alert.severity != severity:
                continue
            if created_after is not None and alert.created_at < created_after:
                continue
            if created_before is not None and alert.created_at > created_before:
                continue
            result.append(alert.clone())
        return result

    async def add_acknowledgment(self, alert_id: int, ack: Acknowledgment) -> bool:
        async with self._ack_lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise KeyError(f"Alert {alert_id} does not exist")
            if alert.has_acknowledged(ack.user_id):
                return False
            alert.acknowledgments.append(Acknowledgment(ack.user_id, ack.timestamp, ack.notes))
            return True

    # ── Incidents ──

    async def insert_incident(self, incident: Incident) -> Incident:
        incident.id = next(self._ids["incident"])
        self._incidents[incident.id] = incident.clone()
        return incident.clone()

    async def get_incident(self, incident_id: int) -> Optional[Incident]:
        incident = self._incidents.get(incident_id)
        return incident.clone() if incident else None

    async def save_incident(self, incident: Incident) -> Incident:
        if incident.id not in self._incidents:
            raise KeyError(f"Incident {incident.id} does not exist")
        self._incidents[incident.id] = incident.clone()
        return incident.clone()

    async def delete_incident(self, incident_id: int) -> bool:
        return self._incidents.pop(incident_id, None) is not None

    async def list_incidents(self, *, status: Optional[IncidentStatus] = None) -> List[Incident]:
        return [
            i.clone() for i in self._incidents.values()
            if status is None or i.status == status
        ]

    # ── Templates ──

    async def insert_template(self, template: NotificationTemplate) -> NotificationTemplate:
        template.id = next(self._ids["template"])
        self._templates[template.id] = template.clone()
        return template.clone()

    async def get_template(self, template_id: int) -> Optional[NotificationTemplate]:
        template = self._templates.get(template_id)
        return template.clone() if template else None

    async def save_template(self, template: NotificationTemplate) -> NotificationTemplate:
        if template.id not in self._templates:
            raise KeyError(f"Template {template.id} does not exist")
        self._templates[template.id] = template.clone()
        return template.clone()

    async def delete_template(self, template_id: int) -> bool:
        return self._templates.pop(template_id, None) is not None

    async def list_templates(
        self,
        *,
        type: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[NotificationTemplate]:
        needle = search.lower() if search else None
        result = []
        for t in self._templates.values():
            if type is not None and t.type != type:
                continue
            if category is not None and t.category != category:
                continue
            if is_active is not None and t.is_active != is_active:
                continue
            if needle is not None and needle not in t.name.lower():
                continue
            result.append(t.clone())
        return result


def _copy(user: Optional[User]) -> Optional[User]:
    if user is None:
        return None
    return User(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        channels=dict(user.channels),
        phone_number=user.phone_number,
        push_token=user.push_token,
        password_hash=user.password_hash,
        created_at=user.created_at,
    )
