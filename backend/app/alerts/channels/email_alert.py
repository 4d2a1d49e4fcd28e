"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • simulation — log only, always succeeds
    • sendgrid   — SendGrid v3 ``mail/send`` HTTP API
    • HTML + plain-text bodies

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 [SEVERITY] Emergency Alert: {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  EMERGENCY ALERT — {SEVERITY}            │
        ├─────────────────────────────────────────┤
        │  {title}                                 │
        │  {message}                               │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import html
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

_SEVERITY_ICONS = {
    Severity.LOW:      "ℹ️",
    Severity.MEDIUM:   "⚠️",
    Severity.HIGH:     "🚨",
    Severity.CRITICAL: "🆘",
}

_SEVERITY_COLOURS = {
    Severity.LOW:      "#4CAF50",   # green
    Severity.MEDIUM:   "#FF9800",   # orange
    Severity.HIGH:     "#F44336",   # red
    Severity.CRITICAL: "#B71C1C",   # dark red
}


def build_subject(content: RenderedContent) -> str:
    icon = _SEVERITY_ICONS.get(content.severity, "⚠️")
    return f"{icon} [{content.severity.value.upper()}] Emergency Alert: {content.title}"


def _build_html_body(content: RenderedContent) -> str:
    colour = _SEVERITY_COLOURS.get(content.severity, "#FF9800")
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">EMERGENCY ALERT — {content.severity.value.upper()}</h2>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <h3>{html.escape(content.title)}</h3>
        <p>{html.escape(content.message)}</p>
      </div>
    </div>
    """


def _build_plain_body(content: RenderedContent) -> str:
    return (
        f"EMERGENCY ALERT — {content.severity.value.upper()}\n\n"
        f"{content.title}\n"
        f"{content.message}\n"
    )


class EmailProvider(ChannelProvider):
    """Email delivery via simulation or SendGrid."""

    channel = AlertChannel.EMAIL

    def __init__(
        self,
        mode: str = "simulation",
        *,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        api_url: str = "https://api.sendgrid.com/v3/mail/send",
        from_address: str = "alerts@emergency-alerts.local",
        timeout_seconds: float = 15.0,
    ):
        super().__init__(mode, client=client)
        self.api_key = api_key
        self.api_url = api_url
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds

    async def send(self, recipient: Recipient, content: RenderedContent) -> ChannelResult:
        if not recipient.email:
            return ChannelResult(success=False, provider=self.mode, error="No email address on file")

        subject = build_subject(content)

        if self.mode == "simulation":
            logger.info(
                "[EMAIL] → %s (%s): Subject='%s'",
                recipient.email, recipient.username, subject,
                extra={"channel": "email", "user_id": recipient.id},
            )
            return ChannelResult(
                success=True,
                provider="simulation",
                provider_response={"mode": "simulated", "subject": subject, "to": recipient.email},
            )

        if self.mode == "sendgrid":
            return await self._send_sendgrid(recipient, content, subject)

        return self._unknown_mode()

    async def _send_sendgrid(
        self, recipient: Recipient, content: RenderedContent, subject: str,
    ) -> ChannelResult:
        if not self.api_key:
            return ChannelResult(success=False, provider="sendgrid", error="SendGrid API key not configured")

        body = {
            "personalizations": [{"to": [{"email": recipient.email}]}],
            "from": {"email": self.from_address},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": _build_plain_body(content)},
                {"type": "text/html", "value": _build_html_body(content)},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._client is not None:
                resp = await self._client.post(self.api_url, json=body, headers=headers, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    resp = await client.post(self.api_url, json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("[EMAIL/SendGrid] Failed for %s: %s", recipient.id, exc)
            return ChannelResult(success=False, provider="sendgrid", error=str(exc))

        return ChannelResult(
            success=True,
            provider="sendgrid",
            provider_response={"status_code": resp.status_code},
        )
