"""
FastAPI application entry point.

Run with:
    uvicorn backend.hazardwatch.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.hazardwatch.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.hazardwatch.core.config import settings
from backend.hazardwatch.core.logging_config import setup_logging, get_logger
from backend.hazardwatch.core.errors import register_error_handlers
from backend.hazardwatch.core.middleware import RequestLoggingMiddleware
from backend.hazardwatch.core.health import HealthStatus, run_health_check
from backend.hazardwatch.core.cache import close_redis
from backend.hazardwatch.core.database import close_db, init_db

# ── Services ──
from backend.hazardwatch.api.deps import ServiceContainer, build_services
from backend.hazardwatch.reference.loader import load_snapshot
from backend.hazardwatch.reference.resolver import ReferenceData

# ── API routers ──
from backend.hazardwatch.api.v1.notifications import router as notifications_router
from backend.hazardwatch.api.v1.reference import router as reference_router
from backend.hazardwatch.api.v1.sign_in import router as sign_in_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire services on startup, release connections on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(ReferenceData(load_snapshot()))
        if settings.DELIVERY_LOG_BACKEND.lower() == "sql":
            await init_db()

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await app.state.services.aclose()
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        await close_redis()
    if settings.DELIVERY_LOG_BACKEND.lower() == "sql":
        await close_db()


# ── Create application ──

def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the app. Passing ``services`` skips production wiring."""
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Location-based water quality alerts. Resolves regulatory "
            "thresholds through a jurisdiction fallback chain, evaluates "
            "measurement safety status, dispatches subscriber notifications "
            "over email and push, and rate-limits sign-in link requests."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
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
    app.include_router(notifications_router)
    app.include_router(reference_router)
    app.include_router(sign_in_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "threshold-resolution",
                "status-evaluation",
                "notification-dispatch",
                "sign-in-rate-limiting",
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
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
