"""
recipients.py — Targeting rules → deduplicated recipients.

Resolution:
    roles     — one storage lookup per distinct role
    specific  — one lookup per distinct user id (unknown ids skipped)
    all       — every stored user

The union is deduplicated on user id, so a user matched by both a role
and an explicit id appears once. Order is first-seen.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set, Union

from backend.app.alerts.models import Recipient, Targeting, User
from backend.app.alerts.storage import Storage
from backend.app.core.errors import ValidationError

logger = logging.getLogger(__name__)


def parse_targeting(raw: Union[Targeting, Dict[str, Any], None]) -> Targeting:
    """Coerce a raw mapping into :class:`Targeting`, raising ValidationError."""
    if isinstance(raw, Targeting):
        return raw
    if raw is None:
        return Targeting()
    if not isinstance(raw, dict):
        raise ValidationError("Targeting must be an object", field="targeting")
    try:
        return Targeting.from_dict(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid targeting: {exc}", field="targeting") from exc


class RecipientResolver:
    """Resolves targeting into safe recipient projections."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def resolve(self, targeting: Union[Targeting, Dict[str, Any], None]) -> List[Recipient]:
        parsed = parse_targeting(targeting)
        if parsed.is_empty:
            return []

        seen: Set[int] = set()
        recipients: List[Recipient] = []

        def _add(user: User) -> None:
            if user.id in seen:
                return
            seen.add(user.id)
            recipients.append(user.to_recipient())

        if parsed.all:
            for user in await self.storage.list_users():
                _add(user)

        for role in parsed.roles:
            for user in await self.storage.list_users(role=role):
                _add(user)

        for user_id in parsed.user_ids:
            if user_id in seen:
                continue
            user = await self.storage.get_user(user_id)
            if user is None:
                logger.debug("Targeted user %d does not exist, skipping", user_id)
                continue
            _add(user)

        logger.debug(
            "Resolved %d recipients (roles=%s, specific=%d, all=%s)",
            len(recipients), [r.value for r in parsed.roles], len(parsed.user_ids), parsed.all,
            extra={"recipient_count": len(recipients)},
        )
        return recipients
