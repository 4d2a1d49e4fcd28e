"""
support.py — Test doubles and seed data shared across the test-suite.

    FakeClock           — manually advanced UTC clock
    RecordingPublisher  — captures realtime events instead of sending them
    FailingPublisher    — realtime transport that is always down
    SlowPublisher       — records events after a fixed delay per publish
    FakeProvider        — channel provider with scripted failures
    GatedProvider       — FakeProvider that parks each send until released

Seeded users (``default_users``):

    id   role         opted-in channels
    ──   ──────────   ─────────────────
    1    admin        email
    2    operator     email, sms
    3    subscriber   email
    4    subscriber   email, sms
    5    subscriber   email, push
    6    subscriber   (none)
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from backend.app.alerts.channels import ChannelProvider
from backend.app.alerts.models import AlertChannel, ChannelResult, User, UserRole
from backend.app.alerts.storage import InMemoryStorage

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class RecordingPublisher:
    """Publisher that stores every event as ``(event, payload, room)``."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any], Optional[str]]] = []

    async def publish(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        self.events.append((event, payload, room))

    def named(self, event: str) -> List[Tuple[Dict[str, Any], Optional[str]]]:
        return [(payload, room) for name, payload, room in self.events if name == event]


class SlowPublisher(RecordingPublisher):
    """Records each event only after ``delay`` seconds, like a congested Redis."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def publish(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        await asyncio.sleep(self.delay)
        await super().publish(event, payload, room)


class FailingPublisher:
    async def publish(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        raise ConnectionError("realtime transport unavailable")


class FakeProvider(ChannelProvider):
    """Succeeds unless the recipient id is listed in ``fail_for`` or ``raise_for``."""

    def __init__(self, channel: AlertChannel, *, fail_for: Iterable[int] = (), raise_for: Iterable[int] = ()):
        super().__init__("fake")
        self.channel = channel
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.calls: List[int] = []

    async def send(self, recipient, content) -> ChannelResult:
        self.calls.append(recipient.id)
        if recipient.id in self.raise_for:
            raise RuntimeError(f"{self.channel.value} gateway down")
        if recipient.id in self.fail_for:
            return ChannelResult(success=False, provider="fake", error="rejected by gateway")
        return ChannelResult(success=True, provider="fake")


class GatedProvider(FakeProvider):
    """Signals ``entered`` on the first send, then blocks until ``release`` is set."""

    def __init__(self, channel: AlertChannel, **kwargs):
        super().__init__(channel, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, recipient, content) -> ChannelResult:
        self.entered.set()
        await self.release.wait()
        return await super().send(recipient, content)


def make_user(
    uid: int,
    role: UserRole = UserRole.SUBSCRIBER,
    channels: Optional[Dict[str, bool]] = None,
) -> User:
    return User(
        id=uid,
        username=f"user{uid}",
        email=f"user{uid}@example.com",
        role=role,
        channels=dict(channels if channels is not None else {"email": True}),
        phone_number=f"+1555000{uid:04d}",
        push_token=f"ExponentPushToken[user{uid}]",
        password_hash="$2b$12$not-a-real-hash",
    )


def default_users() -> List[User]:
    return [
        make_user(1, UserRole.ADMIN),
        make_user(2, UserRole.OPERATOR, {"email": True, "sms": True}),
        make_user(3, channels={"email": True}),
        make_user(4, channels={"email": True, "sms": True}),
        make_user(5, channels={"email": True, "push": True}),
        make_user(6, channels={}),
    ]


async def seeded_storage(users: Iterable[User]) -> InMemoryStorage:
    storage = InMemoryStorage()
    for user in users:
        await storage.insert_user(user)
    return storage


def make_providers(**overrides: FakeProvider) -> Dict[AlertChannel, FakeProvider]:
    providers = {channel: FakeProvider(channel) for channel in AlertChannel}
    for name, provider in overrides.items():
        providers[AlertChannel(name)] = provider
    return providers
