"""
alert_service.py — Alert lifecycle orchestration engine.

This is the central coordinator that:
    1. Validates an alert creation request
    2. Resolves targeting into recipients
    3. Dispatches to every opted-in channel concurrently
    4. Aggregates per-recipient delivery statistics
    5. Persists the alert once, then broadcasts it
    6. Enforces edit, cancellation and deletion policy

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  create / send      │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Validate        │  title, message, severity, channels, targeting
    └─────────┬───────────┘
              │  draft / pending → persist + newAlert, stop here
              ▼
    ┌─────────────────────┐
    │  2. Resolve         │  roles ∪ specific ∪ all, dedup on user id
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Dispatch        │  recipient × opted-in channel, asyncio.gather
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Aggregate       │  one tally per recipient
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. Persist         │  single write; on failure nothing is stored
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  6. Broadcast       │  newAlert (global), personalAlert (user-{id})
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
EDIT & CANCELLATION POLICY
═══════════════════════════════════════════════════════════════════════════

    Status       update content    update other    cancel          send
    ─────────    ──────────────    ────────────    ────────────    ─────
    draft        yes               yes             InvalidState    yes
    pending      yes               yes             InvalidState    yes
    sent         Immutable         yes             ≤ window        InvalidState
    cancelled    InvalidState      InvalidState    InvalidState    InvalidState
    failed       InvalidState      InvalidState    InvalidState    InvalidState

Content fields are title, message, severity and channels. The
cancellation window defaults to 300 s and is measured from ``sent_at``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from backend.app.alerts.broadcaster import RealtimeBroadcaster
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.models import (
    CONTENT_FIELDS,
    MUTABLE_ALERT_FIELDS,
    Alert,
    AlertChannel,
    AlertStatus,
    DeliveryStats,
    Recipient,
    Severity,
    TemplateUsage,
    Targeting,
)
from backend.app.alerts.recipients import RecipientResolver
from backend.app.alerts.storage import Storage
from backend.app.core.errors import (
    AlertNotFound,
    AlertSystemError,
    CancellationWindowExpiredError,
    ImmutableSentAlertError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_CREATABLE_STATUSES = (AlertStatus.DRAFT, AlertStatus.PENDING, AlertStatus.SENT)

_SORTABLE = {"created_at", "updated_at", "title", "severity", "status"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════

def validate_alert_data(
    data: Mapping[str, Any],
    *,
    partial: bool = False,
    title_max_length: int = 100,
) -> Dict[str, Any]:
    """
    Validate a creation payload (or an update patch when ``partial``).

    Returns
    -------
    dict
        Cleaned values: enums parsed, channels deduplicated, targeting
        parsed into :class:`Targeting`.

    Raises
    ------
    ValidationError
        With ``errors`` mapping each offending field to a message.
    """
    errors: Dict[str, str] = {}
    clean: Dict[str, Any] = {}

    def present(name: str) -> bool:
        return name in data or not partial

    if present("title"):
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            errors["title"] = "Title is required"
        elif len(title) > title_max_length:
            errors["title"] = f"Title must be {title_max_length} characters or less"
        else:
            clean["title"] = title

    if present("message"):
        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            errors["message"] = "Message is required"
        else:
            clean["message"] = message

    if present("severity"):
        try:
            clean["severity"] = Severity(data.get("severity"))
        except ValueError:
            errors["severity"] = "Severity must be one of: " + ", ".join(s.value for s in Severity)

    if present("channels"):
        raw = data.get("channels")
        if not isinstance(raw, (list, tuple)) or not raw:
            errors["channels"] = "At least one notification channel is required"
        else:
            channels: List[AlertChannel] = []
            for value in raw:
                try:
                    channel = AlertChannel(value)
                except ValueError:
                    errors["channels"] = f"Invalid channel: {value}"
                    break
                if channel not in channels:
                    channels.append(channel)
            else:
                clean["channels"] = channels

    if present("targeting"):
        raw = data.get("targeting")
        if not isinstance(raw, (dict, Targeting)):
            errors["targeting"] = "Targeting information is required"
        elif isinstance(raw, Targeting):
            clean["targeting"] = raw
        else:
            try:
                clean["targeting"] = Targeting.from_dict(raw)
            except (TypeError, ValueError) as exc:
                errors["targeting"] = f"Invalid targeting: {exc}"

    if "attachments" in data:
        attachments = data["attachments"]
        if not isinstance(attachments, list) or not all(isinstance(a, str) for a in attachments):
            errors["attachments"] = "Attachments must be a list of strings"
        else:
            clean["attachments"] = list(attachments)

    if "metadata" in data:
        metadata = data["metadata"]
        if not isinstance(metadata, dict):
            errors["metadata"] = "Metadata must be an object"
        else:
            clean["metadata"] = dict(metadata)

    if "status" in data and data["status"] is not None:
        if partial:
            errors["status"] = "Status cannot be changed through an update"
        else:
            try:
                status = AlertStatus(data["status"])
            except ValueError:
                status = None
            if status not in _CREATABLE_STATUSES:
                errors["status"] = "Status must be one of: draft, pending, sent"
            else:
                clean["status"] = status

    if errors:
        raise ValidationError("Invalid alert data", errors=errors)
    return clean


# ═══════════════════════════════════════════════════════════════════════════
# Per-alert locks
# ═══════════════════════════════════════════════════════════════════════════

class AlertLocks:
    """One asyncio.Lock per record id; the lifecycle and acknowledgment paths share one instance."""

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}

    def __call__(self, alert_id: int) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = self._locks[alert_id] = asyncio.Lock()
        return lock

    def discard(self, alert_id: int) -> None:
        self._locks.pop(alert_id, None)


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle Manager
# ═══════════════════════════════════════════════════════════════════════════

class AlertLifecycleManager:
    """Owns alert state transitions, delivery statistics and analytics."""

    def __init__(
        self,
        storage: Storage,
        resolver: RecipientResolver,
        dispatcher: NotificationDispatcher,
        broadcaster: RealtimeBroadcaster,
        *,
        locks: Optional[AlertLocks] = None,
        cancellation_window_seconds: int = 300,
        title_max_length: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster
        self.locks = locks or AlertLocks()
        self.cancellation_window_seconds = cancellation_window_seconds
        self.title_max_length = title_max_length
        self.clock = clock

    # ── helpers ──

    async def _get_or_raise(self, alert_id: int) -> Alert:
        alert = await self.storage.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    async def _deliver(self, alert: Alert) -> List[Recipient]:
        """Resolve, dispatch and stamp the outcome onto ``alert`` in place."""
        recipients = await self.resolver.resolve(alert.targeting)
        outcomes = await self.dispatcher.dispatch(alert, recipients)
        stats = DeliveryStats.from_outcomes([r.id for r in recipients], outcomes)

        now = self.clock()
        alert.delivery_stats = stats
        alert.updated_at = now
        if stats.total > 0 and stats.sent == 0:
            alert.status = AlertStatus.FAILED
        else:
            alert.status = AlertStatus.SENT
            alert.sent_at = now
        return recipients

    async def _persist(self, operation: str, write, alert: Alert) -> Alert:
        try:
            return await write(alert)
        except AlertSystemError:
            raise
        except Exception as exc:
            logger.error("Failed to persist alert %s: %s", alert.id, exc, extra={"alert_id": alert.id})
            raise PersistenceError(operation, str(exc), alert_id=alert.id) from exc

    # ── create / send ──

    async def create(
        self,
        alert_data: Mapping[str, Any],
        actor_id: int,
        *,
        from_template: Optional[TemplateUsage] = None,
        from_incident: Optional[int] = None,
    ) -> Alert:
        """
        Create an alert.

        Without an explicit status the alert is dispatched immediately
        and ends ``sent`` (or ``failed`` when nobody was reached). An
        explicit ``draft``/``pending`` status stores it undispatched.
        """
        clean = validate_alert_data(alert_data, title_max_length=self.title_max_length)
        status = clean.pop("status", None)

        now = self.clock()
        alert = Alert(
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            from_template=from_template,
            from_incident=from_incident,
            **clean,
        )

        recipients: List[Recipient] = []
        if status in (AlertStatus.DRAFT, AlertStatus.PENDING):
            alert.status = status
        else:
            recipients = await self._deliver(alert)

        alert = await self._persist("insert_alert", self.storage.insert_alert, alert)

        logger.info(
            "Alert %d created with status %s (%d/%d recipients reached)",
            alert.id, alert.status.value, alert.delivery_stats.sent, alert.delivery_stats.total,
            extra={"alert_id": alert.id, "recipient_count": alert.delivery_stats.total},
        )
        await self.broadcaster.alert_created(alert, recipients)
        return alert

    async def send(self, alert_id: int, actor_id: int) -> Alert:
        """Dispatch a draft or pending alert."""
        async with self.locks(alert_id):
            alert = await self._get_or_raise(alert_id)
            if not alert.status.is_sendable:
                raise InvalidStateError(
                    "Only draft or pending alerts can be sent",
                    current_status=alert.status.value,
                    alert_id=alert_id,
                )
            recipients = await self._deliver(alert)
            alert = await self._persist("save_alert", self.storage.save_alert, alert)

        logger.info(
            "Alert %d sent by %d: %s", alert_id, actor_id, alert.status.value,
            extra={"alert_id": alert_id, "recipient_count": alert.delivery_stats.total},
        )
        await self.broadcaster.alert_created(alert, recipients)
        return alert

    # ── update ──

    async def update(self, alert_id: int, patch: Mapping[str, Any], actor_id: int) -> Alert:
        async with self.locks(alert_id):
            alert = await self._get_or_raise(alert_id)

            if alert.status.is_terminal:
                raise InvalidStateError(
                    f"Cannot update an alert that is {alert.status.value}",
                    current_status=alert.status.value,
                    alert_id=alert_id,
                )
            if alert.status is AlertStatus.SENT:
                touched = CONTENT_FIELDS.intersection(patch)
                if touched:
                    raise ImmutableSentAlertError(alert_id, list(touched))

            unknown = set(patch) - MUTABLE_ALERT_FIELDS - {"status"}
            if unknown:
                raise ValidationError(
                    "Unknown alert fields",
                    errors={name: "Field cannot be updated" for name in sorted(unknown)},
                )

            clean = validate_alert_data(patch, partial=True, title_max_length=self.title_max_length)
            for name, value in clean.items():
                setattr(alert, name, value)
            alert.updated_at = self.clock()

            alert = await self._persist("save_alert", self.storage.save_alert, alert)

        logger.info(
            "Alert %d updated by %d: %s", alert_id, actor_id, sorted(clean),
            extra={"alert_id": alert_id},
        )
        return alert

    # ── cancel / delete ──

    async def cancel(self, alert_id: int, actor_id: int) -> Alert:
        async with self.locks(alert_id):
            alert = await self._get_or_raise(alert_id)

            if alert.status is not AlertStatus.SENT:
                raise InvalidStateError(
                    f"Cannot cancel an alert that is {alert.status.value}",
                    current_status=alert.status.value,
                    alert_id=alert_id,
                )

            now = self.clock()
            elapsed = (now - alert.sent_at).total_seconds()
            if elapsed > self.cancellation_window_seconds:
                raise CancellationWindowExpiredError(alert_id, self.cancellation_window_seconds, elapsed)

            alert.status = AlertStatus.CANCELLED
            alert.cancelled_at = now
            alert.updated_at = now
            alert = await self._persist("save_alert", self.storage.save_alert, alert)

        logger.info("Alert %d cancelled by %d", alert_id, actor_id, extra={"alert_id": alert_id})
        await self.broadcaster.alert_cancelled(alert_id)
        return alert

    async def delete(self, alert_id: int) -> None:
        async with self.locks(alert_id):
            await self._get_or_raise(alert_id)
            await self.storage.delete_alert(alert_id)
        self.locks.discard(alert_id)
        logger.info("Alert %d deleted", alert_id, extra={"alert_id": alert_id})

    # ── queries ──

    async def get(self, alert_id: int) -> Alert:
        return await self._get_or_raise(alert_id)

    async def list(
        self,
        *,
        status: Optional[AlertStatus] = None,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> List[Alert]:
        if sort_by not in _SORTABLE:
            raise ValidationError(f"Cannot sort by {sort_by}", field="sort_by")
        alerts = await self.storage.list_alerts(status=status)
        alerts.sort(key=lambda a: (getattr(a, sort_by), a.id), reverse=sort_order.lower() == "desc")
        return alerts[: max(limit, 0)]

    async def get_analytics(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[Severity] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate counts over the (optionally filtered) alert set.

        ``successRate`` is recipients reached over recipients targeted,
        as a percentage rounded to two decimals.
        """
        alerts = await self.storage.list_alerts(
            status=status,
            severity=severity,
            created_after=created_after,
            created_before=created_before,
        )

        by_status = Counter(a.status for a in alerts)
        by_severity = Counter(a.severity for a in alerts)
        by_channel = Counter(c for a in alerts for c in a.channels)

        totals = {
            "totalRecipients": sum(a.delivery_stats.total for a in alerts),
            "sentNotifications": sum(a.delivery_stats.sent for a in alerts),
            "failedNotifications": sum(a.delivery_stats.failed for a in alerts),
            "pendingNotifications": sum(a.delivery_stats.pending for a in alerts),
        }
        total = totals["totalRecipients"]
        rate = round(totals["sentNotifications"] / total * 100, 2) if total else 0.0

        return {
            "alertCounts": {"total": len(alerts), **{s.value: by_status[s] for s in AlertStatus}},
            "deliveryStats": {**totals, "successRate": rate},
            "severityCounts": {s.value: by_severity[s] for s in Severity},
            "channelCounts": {c.value: by_channel[c] for c in AlertChannel},
        }
