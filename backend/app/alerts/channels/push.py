"""
push.py — Mobile push notification channel.

Delivery mechanism:
    • simulation — log only, always succeeds
    • expo       — Expo push service (``ExponentPushToken[...]`` tokens)
    • Payload: JSON with title, body, alert metadata

The Expo API answers 200 even for per-message failures; the ticket in
``data[0]`` carries ``status: "ok" | "error"``.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from backend.app.alerts.channels import ChannelProvider
from backend.app.alerts.models import (
    AlertChannel,
    ChannelResult,
    Recipient,
    RenderedContent,
    Severity,
)

logger = logging.getLogger(__name__)

EXPO_TOKEN_PREFIX = "ExponentPushToken["

_URGENT = (Severity.HIGH, Severity.CRITICAL)


def build_push_message(token: str, content: RenderedContent) -> dict:
    urgent = content.severity in _URGENT
    return {
        "to": token,
        "title": content.title,
        "body": content.message,
        "sound": "default",
        "priority": "high" if urgent else "default",
        "data": {"severity": content.severity.value, "type": "alert"},
    }


class PushProvider(ChannelProvider):
    """Push delivery via simulation or the Expo push service."""

    channel = AlertChannel.PUSH

    def __init__(
        self,
        mode: str = "simulation",
        *,
        client: Optional[httpx.AsyncClient] = None,
        push_url: str = "https://exp.host/--/api/v2/push/send",
        timeout_seconds: float = 10.0,
    ):
        super().__init__(mode, client=client)
        self.push_url = push_url
        self.timeout_seconds = timeout_seconds

    async def send(self, recipient: Recipient, content: RenderedContent) -> ChannelResult:
        # ── Token validation ──
        if not recipient.push_token:
            return ChannelResult(success=False, provider=self.mode, error="No push token on file")

        if self.mode == "simulation":
            logger.info(
                "[PUSH] → %s (%s): %s",
                recipient.id, recipient.username, content.title,
                extra={"channel": "push", "user_id": recipient.id},
            )
            return ChannelResult(
                success=True,
                provider="simulation",
                provider_response={"mode": "simulated", "token_prefix": recipient.push_token[:12] + "..."},
            )

        if self.mode == "expo":
            return await self._send_expo(recipient, content)

        return self._unknown_mode()

    async def _send_expo(self, recipient: Recipient, content: RenderedContent) -> ChannelResult:
        if not recipient.push_token.startswith(EXPO_TOKEN_PREFIX):
            return ChannelResult(success=False, provider="expo", error="Not an Expo push token")

        message = build_push_message(recipient.push_token, content)

        try:
            if self._client is not None:
                resp = await self._client.post(self.push_url, json=[message], timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    resp = await client.post(self.push_url, json=[message])
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[PUSH/Expo] Failed for %s: %s", recipient.id, exc)
            return ChannelResult(success=False, provider="expo", error=f"Expo push error: {exc}")

        try:
            body = resp.json()
        except ValueError:
            logger.error("[PUSH/Expo] Unreadable response for %s", recipient.id)
            return ChannelResult(
                success=False,
                provider="expo",
                error="Unreadable response from Expo",
                provider_response={"status_code": resp.status_code},
            )
        tickets = (body.get("data") if isinstance(body, dict) else None) or [{}]
        ticket = tickets[0]
        if ticket.get("status") != "ok":
            return ChannelResult(
                success=False,
                provider="expo",
                error=ticket.get("message", "Expo rejected the notification"),
                provider_response=ticket,
            )
        return ChannelResult(success=True, provider="expo", provider_response=ticket)
