"""
Application entry point.
Psychology: One factory builds the whole service so tests and production run the same wiring.
Intention: Settings -> ServiceContainer -> FastAPI app with the admission pipeline, routers,
exception handlers, metrics and the maintenance scheduler.
"""
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI

from backlify import __version__
from backlify.api import epoint, generated, payment, usage
from backlify.auth import router as auth_router
from backlify.config import ConfigurationError, Settings
from backlify.database import DatabaseUnavailable
from backlify.middleware.error_handler import install_loop_exception_handler, register_exception_handlers
from backlify.middleware.logging import setup_structured_logging
from backlify.middleware.pipeline import AdmissionPipeline
from backlify.monitoring import setup_monitoring
from backlify.services.container import ServiceContainer
from backlify.services.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: ServiceContainer = app.state.services
    settings = services.settings

    if not await services.database.ping():
        await services.close()
        raise DatabaseUnavailable("Database is unreachable; refusing to start")

    install_loop_exception_handler(asyncio.get_running_loop(), services.audit)

    if not settings.is_production:
        await services.database.create_all()

    scheduler = MaintenanceScheduler(services)
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()

    logger.info(f"Backlify control plane v{__version__} starting ({settings.environment})")
    try:
        yield
    finally:
        await scheduler.stop()
        await services.close()
        logger.info("Backlify control plane shutting down")


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    setup_structured_logging(settings.log_level, json_logs=settings.is_production)

    app = FastAPI(
        title="Backlify Control Plane",
        version=__version__,
        description="Access, usage metering and billing for Backlify",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services or ServiceContainer.build(settings)

    register_exception_handlers(app)
    app.add_middleware(AdmissionPipeline)
    setup_monitoring(app)

    app.include_router(auth_router.router)
    app.include_router(payment.router)
    app.include_router(epoint.router)
    app.include_router(epoint.legacy_router)
    app.include_router(usage.router)
    app.include_router(generated.router)

    @app.get("/")
    async def root():
        return {
            "service": "Backlify Control Plane",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        container: ServiceContainer = app.state.services
        database_ok = await container.database.ping()
        return {
            "status": "healthy" if database_ok else "degraded",
            "environment": container.settings.environment,
            "version": __version__,
            "database": "connected" if database_ok else "unreachable",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "integrations": {
                container.gateway.name: container.gateway.get_status(),
                container.google.name: container.google.get_status(),
            },
        }

    return app


def run():
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    # lifespan="on" turns a failed startup (unreachable store) into a non-zero exit
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, lifespan="on")


if __name__ == "__main__":
    run()
