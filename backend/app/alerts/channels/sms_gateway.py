"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • simulation — log only, always succeeds
    • twilio     — POST {api_base}/Accounts/{SID}/Messages.json
    • Payload: ≤160 chars (GSM 7-bit)

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    "ALERT [{SEVERITY}]: {title} - {message}"

    Example:
        "ALERT [HIGH]: Flood Warning - Evacuate low-lying areas of Riverside now."

Bodies longer than one segment are truncated with a trailing "...".
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from backend.app.alerts.channels import ChannelProvider
from backend.app.alerts.models import AlertChannel, ChannelResult, Recipient, RenderedContent

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def format_sms(content: RenderedContent) -> str:
    """Format the SMS body within the 160-char GSM limit."""
    body = f"ALERT [{content.severity.value.upper()}]: {content.title} - {content.message}"
    if len(body) > SMS_MAX_GSM7:
        body = body[: SMS_MAX_GSM7 - 3] + "..."
    return body


class SmsProvider(ChannelProvider):
    """SMS delivery via simulation or Twilio."""

    channel = AlertChannel.SMS

    def __init__(
        self,
        mode: str = "simulation",
        *,
        client: Optional[httpx.AsyncClient] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 15.0,
    ):
        super().__init__(mode, client=client)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def send(self, recipient: Recipient, content: RenderedContent) -> ChannelResult:
        # ── Phone validation ──
        if not recipient.phone_number:
            return ChannelResult(success=False, provider=self.mode, error="No phone number on file")

        sms_body = format_sms(content)

        # ── Provider dispatch ──
        if self.mode == "simulation":
            logger.info(
                "[SMS] → %s (%s): %d chars → '%s'",
                recipient.phone_number, recipient.username, len(sms_body),
                sms_body[:80] + ("..." if len(sms_body) > 80 else ""),
                extra={"channel": "sms", "user_id": recipient.id},
            )
            return ChannelResult(
                success=True,
                provider="simulation",
                provider_response={
                    "mode": "simulated",
                    "message_length": len(sms_body),
                    "phone": recipient.phone_number,
                },
            )

        if self.mode == "twilio":
            return await self._send_twilio(recipient, sms_body)

        return self._unknown_mode()

    async def _send_twilio(self, recipient: Recipient, sms_body: str) -> ChannelResult:
        if not (self.account_sid and self.auth_token and self.from_number):
            return ChannelResult(success=False, provider="twilio", error="Twilio credentials not configured")

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        form = {"To": recipient.phone_number, "From": self.from_number, "Body": sms_body}
        auth = (self.account_sid, self.auth_token)

        try:
            if self._client is not None:
                resp = await self._client.post(url, data=form, auth=auth, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    resp = await client.post(url, data=form, auth=auth)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[SMS/Twilio] Failed for %s: %s", recipient.id, exc)
            return ChannelResult(success=False, provider="twilio", error=str(exc))

        # The message is accepted once Twilio answers 2xx; the body only adds detail
        try:
            payload = resp.json()
        except ValueError:
            logger.warning("[SMS/Twilio] Non-JSON response for %s", recipient.id)
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return ChannelResult(
            success=True,
            provider="twilio",
            provider_response={"sid": payload.get("sid"), "status": payload.get("status")},
        )
