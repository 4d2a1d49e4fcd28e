"""
models.py — Shared data structures for the alert distribution engine.

Defines:
    • Severity, AlertChannel, AlertStatus, UserRole, IncidentStatus enums
    • User / Recipient — a stored user and its credential-free projection
    • Targeting        — who should receive an alert
    • Alert            — the broadcast message and its delivery state
    • DispatchOutcome  — single recipient × channel attempt record
    • DeliveryStats    — per-recipient delivery aggregate
    • Acknowledgment   — a recipient's confirmation of receipt
    • NotificationTemplate, Incident

═══════════════════════════════════════════════════════════════════════════
ALERT STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    draft ──┐
            ├──► sent ──► cancelled     (within the cancellation window)
    pending ┘
            └──► failed                 (recipients resolved, none reached)

    Creation without an explicit status goes straight to ``sent``.
    ``sent`` blocks content edits (title, message, severity, channels)
    but may still be cancelled. ``cancelled`` and ``failed`` are terminal.

═══════════════════════════════════════════════════════════════════════════
DELIVERY ACCOUNTING
═══════════════════════════════════════════════════════════════════════════

Each recipient contributes exactly one tally regardless of how many
channels were attempted:

    reached  = at least one opted-in channel succeeded
    failed   = zero successful attempts (including no opted-in channel)

    Recipient    email    sms    push     Tally
    ─────────    ─────    ───    ────     ─────
    #1           ok       fail   —        sent
    #2           fail     —      —        failed
    #3           —        —      —        failed   (no opt-ins)
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    """Alert and incident severity levels."""
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class AlertChannel(str, Enum):
    """Available notification channels."""
    EMAIL = "email"
    SMS   = "sms"
    PUSH  = "push"


class AlertStatus(str, Enum):
    """Alert lifecycle states."""
    DRAFT     = "draft"
    PENDING   = "pending"
    SENT      = "sent"
    CANCELLED = "cancelled"
    FAILED    = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertStatus.CANCELLED, AlertStatus.FAILED)

    @property
    def is_sendable(self) -> bool:
        return self in (AlertStatus.DRAFT, AlertStatus.PENDING)


class UserRole(str, Enum):
    ADMIN      = "admin"
    OPERATOR   = "operator"
    SUBSCRIBER = "subscriber"


class IncidentStatus(str, Enum):
    REPORTED      = "reported"
    INVESTIGATING = "investigating"
    RESOLVED      = "resolved"
    CLOSED        = "closed"


# Fields frozen once an alert has been sent
CONTENT_FIELDS = frozenset({"title", "message", "severity", "channels"})

# Fields an update patch may touch
MUTABLE_ALERT_FIELDS = CONTENT_FIELDS | {"targeting", "attachments", "metadata"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Users & Recipients
# ═══════════════════════════════════════════════════════════════════════════

def _default_opt_ins() -> Dict[str, bool]:
    return {"email": True, "sms": False, "push": False}


@dataclass
class User:
    """
    A stored user record, consumed read-only by the engine.

    Attributes
    ----------
    channels : dict
        Per-channel opt-in flags, e.g. ``{"email": True, "sms": False}``.
    password_hash : str | None
        Credential material owned by the auth layer; never leaves
        storage through :meth:`to_recipient`.
    """
    id: int
    username: str
    email: Optional[str]
    role: UserRole = UserRole.SUBSCRIBER
    channels: Dict[str, bool] = field(default_factory=_default_opt_ins)
    phone_number: Optional[str] = None
    push_token: Optional[str] = None
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    def to_recipient(self) -> "Recipient":
        return Recipient(
            id=self.id,
            username=self.username,
            email=self.email,
            role=self.role,
            channels=dict(self.channels),
            phone_number=self.phone_number,
            push_token=self.push_token,
        )


@dataclass(frozen=True)
class Recipient:
    """Credential-free projection of a user, as handed to providers."""
    id: int
    username: str
    email: Optional[str]
    role: UserRole
    channels: Dict[str, bool] = field(default_factory=dict)
    phone_number: Optional[str] = None
    push_token: Optional[str] = None

    def opted_in(self, channel: AlertChannel) -> bool:
        return bool(self.channels.get(channel.value, False))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "channels": dict(self.channels),
            "phone_number": self.phone_number,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Targeting
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Targeting:
    """
    Who should receive an alert.

    ``specific`` and ``userIds`` are accepted as synonyms on input; both
    are merged into :attr:`user_ids`.
    """
    roles: List[UserRole] = field(default_factory=list)
    user_ids: List[int] = field(default_factory=list)
    all: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Targeting":
        """
        Parse a raw targeting mapping.

        Raises
        ------
        ValueError
            On unknown roles, user ids that are not integers, or an
            ``all`` flag that is not a boolean.
        """
        roles: List[UserRole] = []
        for raw in data.get("roles") or []:
            role = UserRole(raw)
            if role not in roles:
                roles.append(role)

        user_ids: List[int] = []
        for key in ("specific", "userIds", "user_ids"):
            for raw in data.get(key) or []:
                # bool is an int subclass; floats and numeric strings are not ids
                if isinstance(raw, bool) or not isinstance(raw, int):
                    raise ValueError(f"Invalid user id: {raw!r}")
                if raw not in user_ids:
                    user_ids.append(raw)

        everyone = data.get("all")
        if everyone is None:
            everyone = False
        elif not isinstance(everyone, bool):
            raise ValueError(f"'all' must be true or false, got {everyone!r}")

        return cls(roles=roles, user_ids=user_ids, all=everyone)

    @property
    def is_empty(self) -> bool:
        return not (self.roles or self.user_ids or self.all)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roles": [r.value for r in self.roles],
            "specific": list(self.user_ids),
            "all": self.all,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RenderedContent:
    """Concrete alert content handed to channel providers."""
    title: str
    message: str
    severity: Severity


@dataclass
class ChannelResult:
    """Provider-level result of one send."""
    success: bool
    provider: str = "simulation"
    error: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class DispatchOutcome:
    """Record of a single delivery attempt to one recipient via one channel."""
    recipient_id: int
    channel: AlertChannel
    success: bool
    error: Optional[str] = None
    provider: Optional[str] = None
    completed_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "success": self.success,
            "error": self.error,
            "provider": self.provider,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass
class DeliveryStats:
    """Aggregate counts of recipients reached vs. not reached."""
    total: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0

    @classmethod
    def from_outcomes(
        cls,
        recipient_ids: Iterable[int],
        outcomes: Sequence[DispatchOutcome],
    ) -> "DeliveryStats":
        """
        One tally per recipient: reached if any attempt succeeded.
        Recipients with no attempts at all count as failed.
        """
        ids = set(recipient_ids)
        reached = {o.recipient_id for o in outcomes if o.success and o.recipient_id in ids}
        return cls(
            total=len(ids),
            sent=len(reached),
            failed=len(ids) - len(reached),
            pending=0,
        )

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.sent / self.total * 100

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "pending": self.pending,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Alert
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Acknowledgment:
    user_id: int
    timestamp: datetime = field(default_factory=_now)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "notes": self.notes,
        }


@dataclass
class TemplateUsage:
    """Provenance of an alert created from a template."""
    template_id: int
    used_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.template_id, "used_at": self.used_at.isoformat()}


@dataclass
class Alert:
    """
    A single emergency broadcast.

    ``id`` is None until storage assigns one on insert.
    """
    title: str
    message: str
    severity: Severity
    channels: List[AlertChannel]
    targeting: Targeting
    created_by: int
    id: Optional[int] = None
    status: AlertStatus = AlertStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    sent_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    from_template: Optional[TemplateUsage] = None
    from_incident: Optional[int] = None
    attachments: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    delivery_stats: DeliveryStats = field(default_factory=DeliveryStats)
    acknowledgments: List[Acknowledgment] = field(default_factory=list)

    def has_acknowledged(self, user_id: int) -> bool:
        return any(a.user_id == user_id for a in self.acknowledgments)

    def content(self) -> RenderedContent:
        return RenderedContent(title=self.title, message=self.message, severity=self.severity)

    def clone(self) -> "Alert":
        return copy.deepcopy(self)

    def acknowledgment_stats(self) -> Dict[str, Any]:
        total = self.delivery_stats.total
        acked = len(self.acknowledgments)
        return {
            "total": total,
            "acknowledged": acked,
            "rate": round(acked / total * 100, 2) if total else 0.0,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "channels": [c.value for c in self.channels],
            "targeting": self.targeting.to_dict(),
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "sent_at": _iso(self.sent_at),
            "cancelled_at": _iso(self.cancelled_at),
            "from_template": self.from_template.to_dict() if self.from_template else None,
            "from_incident": self.from_incident,
            "attachments": list(self.attachments),
            "metadata": dict(self.metadata),
            "delivery_stats": self.delivery_stats.to_dict(),
            "acknowledgments": [a.to_dict() for a in self.acknowledgments],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationTemplate:
    """Reusable content blueprint with ``{{variable}}`` placeholders."""
    name: str
    type: str
    category: str
    title: str
    content: str
    created_by: int
    id: Optional[int] = None
    description: Optional[str] = None
    variables: List[str] = field(default_factory=list)
    translations: Dict[str, Dict[str, str]] = field(default_factory=dict)
    channels: List[AlertChannel] = field(default_factory=lambda: [AlertChannel.EMAIL])
    severity: Severity = Severity.MEDIUM
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def clone(self) -> "NotificationTemplate":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "category": self.category,
            "title": self.title,
            "content": self.content,
            "variables": list(self.variables),
            "translations": copy.deepcopy(self.translations),
            "channels": [c.value for c in self.channels],
            "severity": self.severity.value,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Incidents
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class IncidentResponse:
    action: str
    user_id: int
    notes: str = ""
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "user_id": self.user_id,
            "notes": self.notes,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StatusChange:
    status: IncidentStatus
    user_id: int
    notes: str = ""
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "user_id": self.user_id,
            "notes": self.notes,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Incident:
    """A reported event that may later be escalated into an alert."""
    title: str
    description: str
    severity: Severity
    reported_by: int
    id: Optional[int] = None
    location: Optional[str] = None
    status: IncidentStatus = IncidentStatus.REPORTED
    reported_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    attachments: List[str] = field(default_factory=list)
    responses: List[IncidentResponse] = field(default_factory=list)
    status_history: List[StatusChange] = field(default_factory=list)
    related_alert_id: Optional[int] = None

    def clone(self) -> "Incident":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "severity": self.severity.value,
            "status": self.status.value,
            "reported_by": self.reported_by,
            "reported_at": self.reported_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "attachments": list(self.attachments),
            "responses": [r.to_dict() for r in self.responses],
            "status_history": [s.to_dict() for s in self.status_history],
            "related_alert_id": self.related_alert_id,
        }


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller."""
    id: int
    role: UserRole
