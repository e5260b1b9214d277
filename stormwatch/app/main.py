"""
FastAPI application entry point.

Run with:
    uvicorn stormwatch.app.main:app --reload --port 8000
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from stormwatch.app.core.config import settings
from stormwatch.app.core.database import build_engine, build_session_factory, close_engine, init_models
from stormwatch.app.core.errors import register_error_handlers
from stormwatch.app.core.health import HealthStatus, run_health_check
from stormwatch.app.core.logging_config import get_logger, setup_logging
from stormwatch.app.core.middleware import RequestLoggingMiddleware

# ── Pipeline ──
from stormwatch.app.alerts.service import build_services

# ── API routers ──
from stormwatch.app.api.v1.impact import router as impact_router

setup_logging()
logger = get_logger(__name__)


def create_app(
    *,
    database_url: Optional[str] = None,
    create_tables: Optional[bool] = None,
    sms_gateway=None,
    email_gateway=None,
    push_gateway=None,
    send_interval: Optional[float] = None,
) -> FastAPI:
    """
    Build the application. Arguments override configuration, mainly for tests.

    create_tables defaults to True outside production; production schemas
    are managed by migrations.
    """
    if create_tables is None:
        create_tables = not settings.is_production

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        engine = build_engine(database_url)
        if create_tables:
            await init_models(engine)
        app.state.engine = engine
        app.state.impact = build_services(
            build_session_factory(engine),
            sms_gateway=sms_gateway,
            email_gateway=email_gateway,
            push_gateway=push_gateway,
            send_interval=send_interval,
        )
        yield
        await app.state.impact.close()
        await close_engine(engine)
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Storm-impact alerting for roofing and exterior sales reps. "
            "Matches severe-weather events to monitored customer properties, "
            "scores likely impact, records one alert per property and event, "
            "and notifies the owning rep by SMS, email or push."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)
    app.include_router(impact_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe: database and gateways."""
        report = await run_health_check(app.state.engine, {
            "sms": app.state.impact.sms_gateway,
            "email": app.state.impact.email_gateway,
            "push": app.state.impact.push_gateway,
        })
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    return app


app = create_app()
