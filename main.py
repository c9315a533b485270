import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.config import settings
from app.database import Base, engine
from app.exception_handlers import register_exception_handlers
from app.infra import build_infrastructure
from app.middleware.bridge_auth import BridgeAuthMiddleware
from app.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from app.middleware.rate_limit import configure_rate_limiting
from app.routes import autoscale, enforcement, monitoring, tenants
from app.scheduler import restore_scheduled_promotions, shutdown_scheduler, start_scheduler
from app.utils.tracing import setup_tracing

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Tasks to run at application startup and shutdown."""
    setup_structured_logging(settings.log_level, json_format=settings.log_json)
    logger.info("Starting %s %s (%s)", settings.app_name, settings.app_version, settings.environment)

    # Tests install their own adapters before the app starts
    if getattr(app.state, "infra", None) is None:
        app.state.infra = build_infrastructure(settings)

    if settings.debug:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created (if not existing).")

    if settings.scheduler_enabled:
        start_scheduler(app.state.infra)
        await restore_scheduled_promotions()

    yield

    logger.info("Shutting down the application...")
    if settings.scheduler_enabled:
        shutdown_scheduler()
    await app.state.infra.aclose()
    await engine.dispose()


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Fleet control plane for multi-tenant workflow runtimes",
        debug=settings.debug,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Added first so it runs inside the logging middleware (correlation id already bound)
    app.add_middleware(BridgeAuthMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)

    configure_rate_limiting(app)
    register_exception_handlers(app)

    # Include routers
    app.include_router(monitoring.router)
    app.include_router(tenants.router)
    app.include_router(autoscale.router)
    app.include_router(enforcement.router)

    setup_tracing(app)

    if settings.debug:
        logger.info(f"Running in {settings.environment} mode")
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)  # Logs SQL statements

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=settings.port, reload=settings.debug)
