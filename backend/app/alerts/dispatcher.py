"""
dispatcher.py — Concurrent multi-channel fan-out.

For every recipient × alert channel the recipient opted into, one
attempt is issued through that channel's provider. All attempts run
concurrently and are joined before returning.

    Situation                          Outcome
    ─────────────────────────────      ─────────────────────────────
    provider returned success          success=True
    provider returned failure          success=False, error from provider
    provider raised                    success=False, error=str(exc)
    no provider for the channel        success=False
    recipient not opted in             no attempt

One channel failing never blocks another.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Mapping, Sequence

from backend.app.alerts.channels import ChannelProvider
from backend.app.alerts.models import (
    Alert,
    AlertChannel,
    DispatchOutcome,
    Recipient,
    RenderedContent,
)

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fan an alert out to recipients over their opted-in channels."""

    def __init__(self, providers: Mapping[AlertChannel, ChannelProvider]):
        self.providers: Dict[AlertChannel, ChannelProvider] = dict(providers)

    async def dispatch(self, alert: Alert, recipients: Sequence[Recipient]) -> List[DispatchOutcome]:
        content = alert.content()
        attempts = [
            self._attempt(recipient, channel, content)
            for recipient in recipients
            for channel in alert.channels
            if recipient.opted_in(channel)
        ]
        if not attempts:
            return []

        outcomes = list(await asyncio.gather(*attempts))

        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(
            "Dispatched alert %s: %d attempts, %d succeeded",
            alert.id, len(outcomes), succeeded,
            extra={"alert_id": alert.id, "recipient_count": len(recipients)},
        )
        return outcomes

    async def _attempt(
        self,
        recipient: Recipient,
        channel: AlertChannel,
        content: RenderedContent,
    ) -> DispatchOutcome:
        provider = self.providers.get(channel)
        if provider is None:
            return DispatchOutcome(
                recipient_id=recipient.id,
                channel=channel,
                success=False,
                error=f"No provider configured for {channel.value}",
            )

        try:
            result = await provider.send(recipient, content)
        except Exception as exc:
            logger.warning(
                "[%s] Provider raised for recipient %d: %s",
                channel.value.upper(), recipient.id, exc,
                extra={"channel": channel.value, "user_id": recipient.id},
            )
            return DispatchOutcome(
                recipient_id=recipient.id,
                channel=channel,
                success=False,
                error=str(exc) or exc.__class__.__name__,
                provider=provider.mode,
            )

        return DispatchOutcome(
            recipient_id=recipient.id,
            channel=channel,
            success=result.success,
            error=result.error,
            provider=result.provider,
        )
