"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ── Core infrastructure ──
from backend.app.core.config import Settings, get_settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Delivery pipeline ──
from backend.app.notifications.channels.whatsapp import WhatsAppClient
from backend.app.notifications.queue import DeliveryQueue
from backend.app.notifications.runtime import build_runtime

# ── API routers ──
from backend.app.api.schemas import HealthzResponse
from backend.app.api.v1.fms import router as fms_router
from backend.app.api.v1.diagnostics import router as diagnostics_router

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    client: Optional[WhatsAppClient] = None,
    queue: Optional[DeliveryQueue] = None,
) -> FastAPI:
    """
    Build the application.

    Tests pass their own settings (SQLite URL), a provider client built on
    ``httpx.MockTransport`` and, when they want to inspect enqueued tasks
    instead of running workers, a recording queue.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    runtime = build_runtime(
        settings,
        session_factory=session_factory,
        client=client,
        queue=queue,
    )

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        await runtime.start()
        yield
        await runtime.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Receives fleet telemetry alerts, deduplicates them, and "
            "delivers WhatsApp notifications through Infobip with "
            "bounded retries."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ── Middleware ──
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app, settings)

    # ── Register routers ──
    app.include_router(fms_router)
    app.include_router(diagnostics_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/healthz", tags=["health"], response_model=HealthzResponse)
    async def healthz():
        """Liveness probe: the process answers."""
        return HealthzResponse()

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe: database, provider configuration, queue."""
        report = await run_health_check(runtime)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
