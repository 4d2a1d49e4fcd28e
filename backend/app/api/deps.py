"""
Service wiring and request dependencies.

``build_services`` assembles the engine from settings (or from injected
parts in tests) and ``main.py`` stores the result on ``app.state``.

The caller's identity arrives from a trusted upstream gateway:

    X-Actor-Id: 42
    X-Actor-Role: operator

    Operation                              Roles
    ─────────────────────────────────      ─────────────────────────
    create / update / send / cancel        admin, operator
    delete, analytics                      admin
    incident list, template reads          admin, operator
    acknowledge, report, other reads       any authenticated actor
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from fastapi import Depends, Header, Request

from backend.app.alerts.acknowledgments import AcknowledgmentTracker
from backend.app.alerts.alert_service import AlertLifecycleManager, AlertLocks
from backend.app.alerts.broadcaster import Publisher, RealtimeBroadcaster
from backend.app.alerts.channels import ChannelProvider, build_providers
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.incidents import IncidentService
from backend.app.alerts.models import Actor, AlertChannel, UserRole
from backend.app.alerts.realtime import ConnectionManager, RedisPublisher
from backend.app.alerts.recipients import RecipientResolver
from backend.app.alerts.storage import InMemoryStorage, Storage
from backend.app.alerts.templates import TemplateService
from backend.app.core.config import Settings
from backend.app.core.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

STAFF = (UserRole.ADMIN, UserRole.OPERATOR)
ADMIN_ONLY = (UserRole.ADMIN,)


@dataclass
class AlertServices:
    storage: Storage
    connections: ConnectionManager
    publisher: Publisher
    broadcaster: RealtimeBroadcaster
    dispatcher: NotificationDispatcher
    lifecycle: AlertLifecycleManager
    acknowledgments: AcknowledgmentTracker
    templates: TemplateService
    incidents: IncidentService

    async def close(self) -> None:
        await self.broadcaster.drain()
        await self.storage.close()
        if isinstance(self.publisher, RedisPublisher):
            await self.publisher.close()


def _build_storage(settings: Settings) -> Storage:
    if settings.STORAGE_BACKEND == "database":
        from backend.app.alerts.sql_storage import SqlAlchemyStorage
        from backend.app.core.database import get_session_factory

        return SqlAlchemyStorage(get_session_factory())
    return InMemoryStorage()


def build_services(
    settings: Settings,
    *,
    storage: Optional[Storage] = None,
    publisher: Optional[Publisher] = None,
    providers: Optional[Mapping[AlertChannel, ChannelProvider]] = None,
    clock: Optional[Callable] = None,
) -> AlertServices:
    """Assemble the engine; any part may be injected."""
    storage = storage or _build_storage(settings)
    connections = ConnectionManager()
    if publisher is None:
        if settings.REALTIME_BACKEND == "redis":
            publisher = RedisPublisher.from_url(settings.REDIS_URL, settings.REDIS_CHANNEL_PREFIX)
        else:
            publisher = connections

    broadcaster = RealtimeBroadcaster(publisher)
    dispatcher = NotificationDispatcher(providers if providers is not None else build_providers(settings))
    locks = AlertLocks()
    clock_kwargs = {"clock": clock} if clock is not None else {}

    lifecycle = AlertLifecycleManager(
        storage,
        RecipientResolver(storage),
        dispatcher,
        broadcaster,
        locks=locks,
        cancellation_window_seconds=settings.CANCELLATION_WINDOW_SECONDS,
        title_max_length=settings.ALERT_TITLE_MAX_LENGTH,
        **clock_kwargs,
    )
    acknowledgments = AcknowledgmentTracker(
        storage,
        broadcaster,
        locks=locks,
        default_notes=settings.DEFAULT_ACK_NOTES,
        **clock_kwargs,
    )

    logger.info(
        "Alert engine ready (storage=%s, realtime=%s)",
        type(storage).__name__, type(publisher).__name__,
    )
    return AlertServices(
        storage=storage,
        connections=connections,
        publisher=publisher,
        broadcaster=broadcaster,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        acknowledgments=acknowledgments,
        templates=TemplateService(storage, broadcaster, lifecycle),
        incidents=IncidentService(storage, broadcaster, lifecycle, **clock_kwargs),
    )


# ── FastAPI dependencies ──

def get_services(request: Request) -> AlertServices:
    return request.app.state.services


def get_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise AuthenticationError()
    try:
        return Actor(id=int(x_actor_id), role=UserRole(x_actor_role))
    except ValueError:
        raise AuthenticationError("Malformed actor identity headers") from None


def require_roles(*roles: UserRole):
    """Dependency factory that admits only the given roles."""

    def _check(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise AuthorizationError(actor.role.value, [r.value for r in roles])
        return actor

    return _check
