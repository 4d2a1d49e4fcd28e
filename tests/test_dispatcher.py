"""
test_dispatcher.py — Concurrent fan-out and delivery accounting.

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio

from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.models import (
    Alert,
    AlertChannel,
    ChannelResult,
    DeliveryStats,
    DispatchOutcome,
    Recipient,
    Severity,
    Targeting,
    UserRole,
)
from tests.support import FakeProvider, make_providers


def _make_alert(*channels: AlertChannel) -> Alert:
    return Alert(
        id=1,
        title="Flood Warning",
        message="Evacuate now",
        severity=Severity.HIGH,
        channels=list(channels or (AlertChannel.EMAIL,)),
        targeting=Targeting(all=True),
        created_by=2,
    )


def _make_recipient(rid: int, *opted: str) -> Recipient:
    return Recipient(
        id=rid,
        username=f"user{rid}",
        email=f"user{rid}@example.com",
        role=UserRole.SUBSCRIBER,
        channels={name: True for name in opted},
        phone_number="+15550001234",
        push_token="ExponentPushToken[abc]",
    )


class _OverlapProvider(FakeProvider):
    """Tracks how many sends are in flight at once."""

    def __init__(self, channel):
        super().__init__(channel)
        self.in_flight = 0
        self.peak = 0

    async def send(self, recipient, content) -> ChannelResult:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return await super().send(recipient, content)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Attempt selection
# ═══════════════════════════════════════════════════════════════════════════

class TestAttemptSelection:
    """Only alert channels the recipient opted into are attempted."""

    async def test_only_opted_in_channels(self):
        providers = make_providers()
        dispatcher = NotificationDispatcher(providers)
        outcomes = await dispatcher.dispatch(
            _make_alert(AlertChannel.EMAIL, AlertChannel.SMS),
            [_make_recipient(1, "email")],
        )
        assert [(o.recipient_id, o.channel) for o in outcomes] == [(1, AlertChannel.EMAIL)]
        assert providers[AlertChannel.SMS].calls == []

    async def test_channels_not_on_alert_skipped(self):
        providers = make_providers()
        dispatcher = NotificationDispatcher(providers)
        outcomes = await dispatcher.dispatch(
            _make_alert(AlertChannel.EMAIL),
            [_make_recipient(1, "email", "push")],
        )
        assert len(outcomes) == 1
        assert providers[AlertChannel.PUSH].calls == []

    async def test_no_recipients(self):
        dispatcher = NotificationDispatcher(make_providers())
        assert await dispatcher.dispatch(_make_alert(), []) == []

    async def test_recipient_without_opt_ins_gets_no_attempt(self):
        dispatcher = NotificationDispatcher(make_providers())
        assert await dispatcher.dispatch(_make_alert(), [_make_recipient(1)]) == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Failure isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureIsolation:
    """One channel failing never blocks another."""

    async def test_provider_exception_becomes_failed_outcome(self):
        providers = make_providers(sms=FakeProvider(AlertChannel.SMS, raise_for={1}))
        dispatcher = NotificationDispatcher(providers)
        outcomes = await dispatcher.dispatch(
            _make_alert(AlertChannel.EMAIL, AlertChannel.SMS),
            [_make_recipient(1, "email", "sms")],
        )
        by_channel = {o.channel: o for o in outcomes}
        assert by_channel[AlertChannel.EMAIL].success is True
        assert by_channel[AlertChannel.SMS].success is False
        assert by_channel[AlertChannel.SMS].error == "sms gateway down"
        assert by_channel[AlertChannel.SMS].provider == "fake"

    async def test_provider_failure_result_kept(self):
        providers = make_providers(email=FakeProvider(AlertChannel.EMAIL, fail_for={1}))
        outcomes = await NotificationDispatcher(providers).dispatch(
            _make_alert(), [_make_recipient(1, "email")],
        )
        assert outcomes[0].success is False
        assert outcomes[0].error == "rejected by gateway"

    async def test_missing_provider(self):
        dispatcher = NotificationDispatcher({AlertChannel.EMAIL: FakeProvider(AlertChannel.EMAIL)})
        outcomes = await dispatcher.dispatch(
            _make_alert(AlertChannel.EMAIL, AlertChannel.PUSH),
            [_make_recipient(1, "email", "push")],
        )
        push = next(o for o in outcomes if o.channel is AlertChannel.PUSH)
        assert push.success is False
        assert push.error == "No provider configured for push"

    async def test_attempts_run_concurrently(self):
        email = _OverlapProvider(AlertChannel.EMAIL)
        dispatcher = NotificationDispatcher({AlertChannel.EMAIL: email})
        recipients = [_make_recipient(i, "email") for i in range(1, 6)]
        outcomes = await dispatcher.dispatch(_make_alert(), recipients)
        assert len(outcomes) == 5
        assert email.peak == 5


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Delivery statistics
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryStats:
    """Per-recipient tallies."""

    async def test_ten_recipients_with_three_failing_channels(self):
        providers = make_providers(email=FakeProvider(AlertChannel.EMAIL, fail_for={2, 5, 8}))
        recipients = [_make_recipient(i, "email", "sms") for i in range(1, 11)]
        outcomes = await NotificationDispatcher(providers).dispatch(
            _make_alert(AlertChannel.EMAIL, AlertChannel.SMS), recipients,
        )
        assert sum(1 for o in outcomes if not o.success) == 3
        stats = DeliveryStats.from_outcomes([r.id for r in recipients], outcomes)
        assert stats.to_dict() == {"total": 10, "sent": 10, "failed": 0, "pending": 0}

    def test_recipient_without_attempts_counts_failed(self):
        outcomes = [DispatchOutcome(1, AlertChannel.EMAIL, True)]
        stats = DeliveryStats.from_outcomes([1, 2], outcomes)
        assert stats.to_dict() == {"total": 2, "sent": 1, "failed": 1, "pending": 0}

    def test_multiple_successes_count_once(self):
        outcomes = [
            DispatchOutcome(1, AlertChannel.EMAIL, True),
            DispatchOutcome(1, AlertChannel.SMS, True),
        ]
        stats = DeliveryStats.from_outcomes([1], outcomes)
        assert stats.sent == 1

    def test_success_rate(self):
        assert DeliveryStats(total=4, sent=3, failed=1).success_rate == 75.0
        assert DeliveryStats().success_rate == 0.0
