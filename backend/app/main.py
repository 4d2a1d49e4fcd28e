"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 5000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Engine wiring ──
from backend.app.alerts.realtime import RedisPublisher
from backend.app.api.deps import AlertServices, build_services

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.incidents import router as incident_router
from backend.app.api.v1.templates import router as template_router
from backend.app.api.v1.realtime import router as realtime_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        if settings.STORAGE_BACKEND == "database":
            from backend.app.core.database import init_db
            await init_db()
        app.state.services = build_services(settings)
    services: AlertServices = app.state.services

    relay_task: Optional[asyncio.Task] = None
    if isinstance(services.publisher, RedisPublisher):
        relay_task = asyncio.create_task(services.publisher.relay(services.connections))

    yield

    # Shutdown: flush broadcasts, stop relay, close connections
    await services.broadcaster.drain()
    if relay_task is not None:
        relay_task.cancel()
        with suppress(asyncio.CancelledError):
            await relay_task
    if owns_services:
        await services.close()
        if settings.STORAGE_BACKEND == "database":
            from backend.app.core.database import close_db
            await close_db()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

def create_app(services: Optional[AlertServices] = None) -> FastAPI:
    """Build the application; ``services`` overrides settings-based wiring."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency alert distribution engine. Targets recipients by role "
            "or id, fans alerts out over email, SMS and push concurrently, "
            "tracks per-recipient delivery and acknowledgments, renders "
            "templates, escalates incidents into alerts, and streams "
            "lifecycle events over WebSocket or Redis pub/sub."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(incident_router)
    app.include_router(template_router)
    app.include_router(realtime_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "alert-lifecycle",
                "recipient-targeting",
                "multi-channel-dispatch",
                "acknowledgments",
                "templates",
                "incidents",
                "realtime",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(app.state.services)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(app.state.services)
        if report.status is HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
