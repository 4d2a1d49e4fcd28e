"""Pytest fixtures: an in-memory engine wired with test doubles."""

from __future__ import annotations

import pytest

from backend.app.api.deps import build_services
from backend.app.core.config import Settings
from tests.support import (
    FakeClock,
    RecordingPublisher,
    default_users,
    make_providers,
    seeded_storage,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def providers():
    return make_providers()


@pytest.fixture
async def storage():
    return await seeded_storage(default_users())


@pytest.fixture
def services(storage, publisher, providers, clock):
    return build_services(
        Settings(),
        storage=storage,
        publisher=publisher,
        providers=providers,
        clock=clock,
    )
