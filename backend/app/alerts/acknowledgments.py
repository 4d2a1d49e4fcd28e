"""
acknowledgments.py — One acknowledgment per (alert, user).

Checks, in order:
    1. alert exists                 else AlertNotFound
    2. alert status is ``sent``     else InvalidState
    3. user has not acknowledged    else DuplicateAcknowledgment

The write happens under the alert's lock and storage performs an
add-if-absent, so concurrent duplicate requests produce exactly one
stored acknowledgment.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from backend.app.alerts.alert_service import AlertLocks
from backend.app.alerts.broadcaster import RealtimeBroadcaster
from backend.app.alerts.models import Acknowledgment, AlertStatus
from backend.app.alerts.storage import Storage
from backend.app.core.errors import (
    AlertNotFound,
    DuplicateAcknowledgmentError,
    InvalidStateError,
)

logger = logging.getLogger(__name__)


class AcknowledgmentTracker:
    """Records and lists recipient acknowledgments."""

    def __init__(
        self,
        storage: Storage,
        broadcaster: RealtimeBroadcaster,
        *,
        locks: Optional[AlertLocks] = None,
        default_notes: str = "Acknowledged via API",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.storage = storage
        self.broadcaster = broadcaster
        self.locks = locks or AlertLocks()
        self.default_notes = default_notes
        self.clock = clock

    async def acknowledge(self, alert_id: int, user_id: int, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Record ``user_id``'s acknowledgment of a sent alert.

        Returns
        -------
        dict
            ``{"acknowledgment": Acknowledgment, "stats": {total, acknowledged, rate}}``
        """
        async with self.locks(alert_id):
            alert = await self.storage.get_alert(alert_id)
            if alert is None:
                raise AlertNotFound(alert_id)
            if alert.status is not AlertStatus.SENT:
                raise InvalidStateError(
                    f"Cannot acknowledge an alert that is {alert.status.value}",
                    current_status=alert.status.value,
                    alert_id=alert_id,
                )
            if alert.has_acknowledged(user_id):
                raise DuplicateAcknowledgmentError(alert_id, user_id)

            ack = Acknowledgment(user_id=user_id, timestamp=self.clock(), notes=notes or self.default_notes)
            if not await self.storage.add_acknowledgment(alert_id, ack):
                raise DuplicateAcknowledgmentError(alert_id, user_id)

            alert.acknowledgments.append(ack)

        logger.info(
            "Alert %d acknowledged by user %d", alert_id, user_id,
            extra={"alert_id": alert_id, "user_id": user_id},
        )
        await self.broadcaster.alert_acknowledged(alert_id, user_id, ack.timestamp)
        return {"acknowledgment": ack, "stats": alert.acknowledgment_stats()}

    async def get_acknowledgments(self, alert_id: int) -> List[Acknowledgment]:
        alert = await self.storage.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return list(alert.acknowledgments)
