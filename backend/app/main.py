"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.database import close_db, get_session_factory, init_db
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Notification engine ──
from backend.app.alerts.notification_service import NotificationEngine, build_engine
from backend.app.alerts.repository import SqlAlertStore, SqlUserStore
from backend.app.api.deps import get_db_probe, get_notification_engine

# ── API routers ──
from backend.app.api.v1.notifications import channels_router, router as notify_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the notification engine on startup, close providers and pool on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )

    if settings.is_development:
        # Production schemas are managed by migrations
        try:
            await init_db()
        except Exception as exc:
            logger.error("Database initialisation failed: %s", exc)

    session_factory = get_session_factory()
    engine = build_engine(SqlUserStore(session_factory), SqlAlertStore(session_factory), settings)
    app.state.notification_engine = engine

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await engine.aclose()
    await close_db()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Alert prioritisation, recipient targeting and multi-channel "
        "notification dispatch. Resolves recipients by geospatial radius, "
        "role, affected-area name and emergency-personnel override, then "
        "delivers over SMS and email with per-channel partial-failure "
        "tracking and atomic delivery counters."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (last added is outermost) ──

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
app.include_router(notify_router)
app.include_router(channels_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "priority-scoring",
            "recipient-resolution",
            "channel-gating",
            "sms-dispatch",
            "email-dispatch",
            "delivery-stats",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check(
    engine: NotificationEngine = Depends(get_notification_engine),
    ping: Callable[[], Awaitable[None]] = Depends(get_db_probe),
):
    """Deep health probe — database and every notification channel."""
    report = await run_health_check(engine, ping)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(
    engine: NotificationEngine = Depends(get_notification_engine),
    ping: Callable[[], Awaitable[None]] = Depends(get_db_probe),
):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(engine, ping)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
