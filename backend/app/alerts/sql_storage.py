"""
sql_storage.py — Async SQLAlchemy implementation of :class:`Storage`.

Tables:
    users                    — read-only to the engine (seeded elsewhere)
    alerts                   — alert records, JSON columns for nested data
    alert_acknowledgments    — UNIQUE(alert_id, user_id) enforces one ack
                               per user at the database level
    incidents                — incident records with JSON response/status logs
    notification_templates   — template records, UNIQUE(name)

All SQLAlchemy failures surface as :class:`PersistenceError`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import relationship, selectinload

from backend.app.alerts.models import (
    Acknowledgment,
    Alert,
    AlertChannel,
    AlertStatus,
    DeliveryStats,
    Incident,
    IncidentResponse,
    IncidentStatus,
    NotificationTemplate,
    Severity,
    StatusChange,
    TemplateUsage,
    Targeting,
    User,
    UserRole,
)
from backend.app.alerts.storage import Storage
from backend.app.core.database import Base
from backend.app.core.errors import PersistenceError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM Rows
# ═══════════════════════════════════════════════════════════════════════════

class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(255))
    password_hash = Column(String(255))
    role = Column(String(20), nullable=False, default=UserRole.SUBSCRIBER.value)
    channels = Column(JSON, nullable=False, default=dict)
    phone_number = Column(String(32))
    push_token = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False)


class AlertRow(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(20), nullable=False)
    channels = Column(JSON, nullable=False)
    targeting = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    from_template_id = Column(Integer)
    from_template_used_at = Column(DateTime(timezone=True))
    from_incident = Column(Integer)
    attachments = Column(JSON, nullable=False, default=list)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    delivery_stats = Column(JSON, nullable=False)

    acknowledgments = relationship(
        "AcknowledgmentRow",
        order_by="AcknowledgmentRow.id",
        cascade="all, delete-orphan",
    )


class AcknowledgmentRow(Base):
    __tablename__ = "alert_acknowledgments"
    __table_args__ = (UniqueConstraint("alert_id", "user_id", name="uq_ack_alert_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text)


class IncidentRow(Base):
    __tablename__ = "incidents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    location = Column(String(255))
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    reported_by = Column(Integer, nullable=False)
    reported_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    attachments = Column(JSON, nullable=False, default=list)
    responses = Column(JSON, nullable=False, default=list)
    status_history = Column(JSON, nullable=False, default=list)
    related_alert_id = Column(Integer)


class TemplateRow(Base):
    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text)
    type = Column(String(50), nullable=False)
    category = Column(String(50), nullable=False, index=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    variables = Column(JSON, nullable=False, default=list)
    translations = Column(JSON, nullable=False, default=dict)
    channels = Column(JSON, nullable=False)
    severity = Column(String(20), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ Domain Conversion
# ═══════════════════════════════════════════════════════════════════════════

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_ts(value: str) -> datetime:
    return _aware(datetime.fromisoformat(value))


def _user_from_row(row: UserRow) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        role=UserRole(row.role),
        channels=dict(row.channels or {}),
        phone_number=row.phone_number,
        push_token=row.push_token,
        password_hash=row.password_hash,
        created_at=_aware(row.created_at),
    )


def _alert_from_row(row: AlertRow) -> Alert:
    usage = None
    if row.from_template_id is not None:
        usage = TemplateUsage(row.from_template_id, _aware(row.from_template_used_at))
    return Alert(
        id=row.id,
        title=row.title,
        message=row.message,
        severity=Severity(row.severity),
        channels=[AlertChannel(c) for c in row.channels],
        targeting=Targeting.from_dict(row.targeting or {}),
        status=AlertStatus(row.status),
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        sent_at=_aware(row.sent_at),
        cancelled_at=_aware(row.cancelled_at),
        from_template=usage,
        from_incident=row.from_incident,
        attachments=list(row.attachments or []),
        metadata=dict(row.meta or {}),
        delivery_stats=DeliveryStats(**row.delivery_stats),
        acknowledgments=[
            Acknowledgment(a.user_id, _aware(a.acknowledged_at), a.notes or "")
            for a in row.acknowledgments
        ],
    )


def _apply_alert(row: AlertRow, alert: Alert) -> None:
    row.title = alert.title
    row.message = alert.message
    row.severity = alert.severity.value
    row.channels = [c.value for c in alert.channels]
    row.targeting = alert.targeting.to_dict()
    row.status = alert.status.value
    row.created_by = alert.created_by
    row.created_at = alert.created_at
    row.updated_at = alert.updated_at
    row.sent_at = alert.sent_at
    row.cancelled_at = alert.cancelled_at
    row.from_template_id = alert.from_template.template_id if alert.from_template else None
    row.from_template_used_at = alert.from_template.used_at if alert.from_template else None
    row.from_incident = alert.from_incident
    row.attachments = list(alert.attachments)
    row.meta = dict(alert.metadata)
    row.delivery_stats = alert.delivery_stats.to_dict()


def _incident_from_row(row: IncidentRow) -> Incident:
    return Incident(
        id=row.id,
        title=row.title,
        description=row.description,
        location=row.location,
        severity=Severity(row.severity),
        status=IncidentStatus(row.status),
        reported_by=row.reported_by,
        reported_at=_aware(row.reported_at),
        updated_at=_aware(row.updated_at),
        attachments=list(row.attachments or []),
        responses=[
            IncidentResponse(r["action"], r["user_id"], r.get("notes", ""), _parse_ts(r["timestamp"]))
            for r in row.responses or []
        ],
        status_history=[
            StatusChange(IncidentStatus(s["status"]), s["user_id"], s.get("notes", ""), _parse_ts(s["timestamp"]))
            for s in row.status_history or []
        ],
        related_alert_id=row.related_alert_id,
    )


def _apply_incident(row: IncidentRow, incident: Incident) -> None:
    row.title = incident.title
    row.description = incident.description
    row.location = incident.location
    row.severity = incident.severity.value
    row.status = incident.status.value
    row.reported_by = incident.reported_by
    row.reported_at = incident.reported_at
    row.updated_at = incident.updated_at
    row.attachments = list(incident.attachments)
    row.responses = [r.to_dict() for r in incident.responses]
    row.status_history = [s.to_dict() for s in incident.status_history]
    row.related_alert_id = incident.related_alert_id


def _template_from_row(row: TemplateRow) -> NotificationTemplate:
    return NotificationTemplate(
        id=row.id,
        name=row.name,
        description=row.description,
        type=row.type,
        category=row.category,
        title=row.title,
        content=row.content,
        variables=list(row.variables or []),
        translations=dict(row.translations or {}),
        channels=[AlertChannel(c) for c in row.channels],
        severity=Severity(row.severity),
        is_active=row.is_active,
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _apply_template(row: TemplateRow, template: NotificationTemplate) -> None:
    row.name = template.name
    row.description = template.description
    row.type = template.type
    row.category = template.category
    row.title = template.title
    row.content = template.content
    row.variables = list(template.variables)
    row.translations = dict(template.translations)
    row.channels = [c.value for c in template.channels]
    row.severity = template.severity.value
    row.is_active = template.is_active
    row.created_by = template.created_by
    row.created_at = template.created_at
    row.updated_at = template.updated_at


# ═══════════════════════════════════════════════════════════════════════════
# Storage Implementation
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlchemyStorage(Storage):
    """Storage backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Storage operation %s failed: %s", operation, exc)
                raise PersistenceError(operation, str(exc)) from exc

    async def _load_alert(self, session: AsyncSession, alert_id: int) -> Optional[AlertRow]:
        result = await session.execute(
            select(AlertRow)
            .options(selectinload(AlertRow.acknowledgments))
            .where(AlertRow.id == alert_id)
        )
        return result.scalar_one_or_none()

    # ── Users ──

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._session("get_user") as session:
            row = await session.get(UserRow, user_id)
            return _user_from_row(row) if row else None

    async def list_users(self, role: Optional[UserRole] = None) -> List[User]:
        async with self._session("list_users") as session:
            stmt = select(UserRow).order_by(UserRow.id)
            if role is not None:
                stmt = stmt.where(UserRow.role == role.value)
            result = await session.execute(stmt)
            return [_user_from_row(r) for r in result.scalars()]

    async def insert_user(self, user: User) -> User:
        async with self._session("insert_user") as session:
            row = UserRow(
                id=user.id,
                username=user.username,
                email=user.email,
                password_hash=user.password_hash,
                role=user.role.value,
                channels=dict(user.channels),
                phone_number=user.phone_number,
                push_token=user.push_token,
                created_at=user.created_at,
            )
            session.add(row)
            await session.commit()
            user.id = row.id
            return _user_from_row(row)

    # ── Alerts ──

    async def insert_alert(self, alert: Alert) -> Alert:
        async with self._session("insert_alert") as session:
            row = AlertRow()
            _apply_alert(row, alert)
            row.acknowledgments = [
                AcknowledgmentRow(user_id=a.user_id, acknowledged_at=a.timestamp, notes=a.notes)
                for a in alert.acknowledgments
            ]
            session.add(row)
            await session.commit()
            alert.id = row.id
            stored = await self._load_alert(session, row.id)
            return _alert_from_row(stored)

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        async with self._session("get_alert") as session:
            row = await self._load_alert(session, alert_id)
            return _alert_from_row(row) if row else None

    async def save_alert(self, alert: Alert) -> Alert:
        async with self._session("save_alert") as session:
            row = await self._load_alert(session, alert.id)
            if row is None:
                raise PersistenceError("save_alert", f"alert {alert.id} does not exist")
            _apply_alert(row, alert)
            await session.commit()
            stored = await self._load_alert(session, alert.id)
            return _alert_from_row(stored)

    async def delete_alert(self, alert_id: int) -> bool:
        async with self._session("delete_alert") as session:
            await session.execute(
                delete(AcknowledgmentRow).where(AcknowledgmentRow.alert_id == alert_id)
            )
            result = await session.execute(delete(AlertRow).where(AlertRow.id == alert_id))
            await session.commit()
            return result.rowcount > 0

    async def list_alerts(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[Severity] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Alert]:
        async with self._session("list_alerts") as session:
            stmt = select(AlertRow).options(selectinload(AlertRow.acknowledgments))
            if status is not None:
                stmt = stmt.where(AlertRow.status == status.value)
            if severity is not None:
                stmt = stmt.where(AlertRow.severity == severity.value)
            if created_after is not None:
                stmt = stmt.where(AlertRow.created_at >= created_after)
            if created_before is not None:
                stmt = stmt.where(AlertRow.created_at <= created_before)
            result = await session.execute(stmt.order_by(AlertRow.id))
            return [_alert_from_row(r) for r in result.scalars()]

    async def add_acknowledgment(self, alert_id: int, ack: Acknowledgment) -> bool:
        async with self._session("add_acknowledgment") as session:
            session.add(AcknowledgmentRow(
                alert_id=alert_id,
                user_id=ack.user_id,
                acknowledged_at=ack.timestamp,
                notes=ack.notes,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    # ── Incidents ──

    async def insert_incident(self, incident: Incident) -> Incident:
        async with self._session("insert_incident") as session:
            row = IncidentRow()
            _apply_incident(row, incident)
            session.add(row)
            await session.commit()
            incident.id = row.id
            return _incident_from_row(row)

    async def get_incident(self, incident_id: int) -> Optional[Incident]:
        async with self._session("get_incident") as session:
            row = await session.get(IncidentRow, incident_id)
            return _incident_from_row(row) if row else None

    async def save_incident(self, incident: Incident) -> Incident:
        async with self._session("save_incident") as session:
            row = await session.get(IncidentRow, incident.id)
            if row is None:
                raise PersistenceError("save_incident", f"incident {incident.id} does not exist")
            _apply_incident(row, incident)
            await session.commit()
            return _incident_from_row(row)

    async def delete_incident(self, incident_id: int) -> bool:
        async with self._session("delete_incident") as session:
            result = await session.execute(delete(IncidentRow).where(IncidentRow.id == incident_id))
            await session.commit()
            return result.rowcount > 0

    async def list_incidents(self, *, status: Optional[IncidentStatus] = None) -> List[Incident]:
        async with self._session("list_incidents") as session:
            stmt = select(IncidentRow).order_by(IncidentRow.id)
            if status is not None:
                stmt = stmt.where(IncidentRow.status == status.value)
            result = await session.execute(stmt)
            return [_incident_from_row(r) for r in result.scalars()]

    # ── Templates ──

    async def insert_template(self, template: NotificationTemplate) -> NotificationTemplate:
        async with self._session("insert_template") as session:
            row = TemplateRow()
            _apply_template(row, template)
            session.add(row)
            await session.commit()
            template.id = row.id
            return _template_from_row(row)

    async def get_template(self, template_id: int) -> Optional[NotificationTemplate]:
        async with self._session("get_template") as session:
            row = await session.get(TemplateRow, template_id)
            return _template_from_row(row) if row else None

    async def save_template(self, template: NotificationTemplate) -> NotificationTemplate:
        async with self._session("save_template") as session:
            row = await session.get(TemplateRow, template.id)
            if row is None:
                raise PersistenceError("save_template", f"template {template.id} does not exist")
            _apply_template(row, template)
            await session.commit()
            return _template_from_row(row)

    async def delete_template(self, template_id: int) -> bool:
        async with self._session("delete_template") as session:
            result = await session.execute(delete(TemplateRow).where(TemplateRow.id == template_id))
            await session.commit()
            return result.rowcount > 0

    async def list_templates(
        self,
        *,
        type: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[NotificationTemplate]:
        async with self._session("list_templates") as session:
            stmt = select(TemplateRow).order_by(TemplateRow.id)
            if type is not None:
                stmt = stmt.where(TemplateRow.type == type)
            if category is not None:
                stmt = stmt.where(TemplateRow.category == category)
            if is_active is not None:
                stmt = stmt.where(TemplateRow.is_active == is_active)
            if search:
                stmt = stmt.where(TemplateRow.name.ilike(f"%{search}%"))
            result = await session.execute(stmt)
            return [_template_from_row(r) for r in result.scalars()]
