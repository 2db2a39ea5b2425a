"""
FastAPI application entry point.

Run with:
    uvicorn alerthub.app.main:app --reload --port 8000

Or from the project root:
    python -m alerthub.app.main
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from alerthub.app.core.config import settings
from alerthub.app.core.logging_config import setup_logging, get_logger
from alerthub.app.core.errors import register_error_handlers
from alerthub.app.core.middleware import RequestLoggingMiddleware
from alerthub.app.core.health import HealthStatus, run_health_check
from alerthub.app.core.cache import close_redis
from alerthub.app.core.database import (
    build_engine,
    build_session_factory,
    close_db,
    init_db,
)

# ── Alert engine ──
from alerthub.app.alerts.broadcaster import Broadcaster
from alerthub.app.alerts.reclaimer import ExpiryReclaimer
from alerthub.app.alerts.sequencer import EventSequencer
from alerthub.app.alerts.service import AlertService
from alerthub.app.alerts.store import AlertStore

# ── API routers ──
from alerthub.app.api.v1.alerts import router as alert_router
from alerthub.app.api.v1.stream import router as stream_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine once per process; tear it down on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    engine = build_engine()
    await init_db(engine)

    sequencer = EventSequencer()
    store = AlertStore(build_session_factory(engine), sequencer)
    broadcaster = Broadcaster()
    service = AlertService(store, sequencer, broadcaster)
    reclaimer = ExpiryReclaimer(store, sequencer)

    app.state.alert_service = service
    app.state.reclaimer = reclaimer
    await reclaimer.start()

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await reclaimer.stop()
    for session in broadcaster.sessions():
        broadcaster.unsubscribe(session)
    await close_redis()
    await close_db(engine)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Emergency alert reporting with a live shared incident view. "
        "Alerts are persisted, versioned per alert, and fanned out to every "
        "connected observer over WebSocket; observers that connect late or "
        "drop resync by version. Resolution is admin-only."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Data-Stale"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(alert_router)
app.include_router(stream_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "endpoints": {
            "alerts": "/api/v1/alerts",
            "stream": "/ws/alerts",
        },
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(app.state.alert_service, app.state.reclaimer)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(app.state.alert_service, app.state.reclaimer)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "alerthub.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
    )
