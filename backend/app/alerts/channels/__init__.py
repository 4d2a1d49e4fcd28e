"""
channels — Per-channel delivery backends.

Each channel module exposes a provider class:
    await provider.send(recipient, content) → ChannelResult

Providers make exactly one best-effort attempt. Fan-out and
aggregation live in dispatcher.py.
"""

from __future__ import annotations

import abc
from typing import Dict, Optional

import httpx

from backend.app.alerts.models import AlertChannel, ChannelResult, Recipient, RenderedContent


class ChannelProvider(abc.ABC):
    """Base class for a single-channel transport."""

    channel: AlertChannel

    def __init__(self, mode: str = "simulation", *, client: Optional[httpx.AsyncClient] = None):
        self.mode = mode
        self._client = client

    @abc.abstractmethod
    async def send(self, recipient: Recipient, content: RenderedContent) -> ChannelResult: ...

    def _unknown_mode(self) -> ChannelResult:
        return ChannelResult(
            success=False,
            provider=self.mode,
            error=f"Unknown {self.channel.value} provider: {self.mode}",
        )


def build_providers(settings, client: Optional[httpx.AsyncClient] = None) -> Dict[AlertChannel, ChannelProvider]:
    """Instantiate one provider per channel from configuration."""
    from backend.app.alerts.channels.email_alert import EmailProvider
    from backend.app.alerts.channels.push import PushProvider
    from backend.app.alerts.channels.sms_gateway import SmsProvider

    return {
        AlertChannel.EMAIL: EmailProvider(
            settings.EMAIL_PROVIDER,
            client=client,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            api_key=settings.SENDGRID_API_KEY,
            api_url=settings.SENDGRID_API_URL,
            from_address=settings.EMAIL_FROM_ADDRESS,
        ),
        AlertChannel.SMS: SmsProvider(
            settings.SMS_PROVIDER,
            client=client,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_FROM_NUMBER,
            api_base=settings.TWILIO_API_BASE,
        ),
        AlertChannel.PUSH: PushProvider(
            settings.PUSH_PROVIDER,
            client=client,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            push_url=settings.EXPO_PUSH_URL,
        ),
    }
