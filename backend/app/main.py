"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
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
from backend.app.runtime import EmergencyRuntime

# ── API routers ──
from backend.app.api.v1.alerts import router as alerts_router
from backend.app.api.v1.messages import router as messages_router
from backend.app.api.v1.location import router as location_router
from backend.app.api.v1.events import router as events_router
from backend.app.api.v1.contacts import router as contacts_router
from backend.app.api.v1.triggers import router as triggers_router
from backend.app.api.v1.services import router as services_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(runtime: Optional[EmergencyRuntime] = None) -> FastAPI:
    """
    Build the application.

    A pre-built runtime (tests, embedding hosts) is started and closed by
    the lifespan exactly like the default one built from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        rt = runtime or EmergencyRuntime(settings)
        await rt.start()
        app.state.runtime = rt
        yield
        await rt.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency detection and response core. Classifies inbound "
            "messages against trigger rules, accepts manual status reports, "
            "locates the user, ranks the nearest hospitals and police "
            "stations, dispatches alerts through a primary endpoint with "
            "ordered fallbacks, notifies emergency contacts and keeps an "
            "auditable event history."
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
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)

    for router in (
        alerts_router,
        messages_router,
        location_router,
        events_router,
        contacts_router,
        triggers_router,
        services_router,
    ):
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "trigger-matching",
                "alert-coordination",
                "responder-lookup",
                "notification-dispatch",
                "event-history",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — store, registry, endpoints, contacts."""
        report = await run_health_check(app.state.runtime)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        report = await run_health_check(app.state.runtime)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
