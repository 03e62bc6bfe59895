from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from holyloy_api.core.settings import settings
from holyloy_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import CascadeRedriveWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    redrive_worker = CascadeRedriveWorker(
        session_factory=_session_factory,
        interval_seconds=settings.cascade_redrive_interval_seconds,
        batch_size=settings.cascade_redrive_batch_size,
        steps=settings.cascade_redrive_steps,
        trigger_label=settings.cascade_redrive_trigger_label,
    )
    app.state.cascade_redrive_worker = redrive_worker

    redrive_enabled = settings.cascade_redrive_worker_enabled
    if redrive_enabled:
        redrive_worker.start()
        logger.info(
            "Cascade re-drive worker enabled",
            interval_seconds=redrive_worker.interval_seconds,
            batch_size=settings.cascade_redrive_batch_size,
        )
    else:
        logger.info(
            "Cascade re-drive worker disabled",
            reason="cascade_redrive_worker_enabled is false",
        )

    try:
        yield
    finally:
        if redrive_enabled and redrive_worker.is_running:
            await redrive_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the Holyloy rewards API."""
    configure_logging(
        service_name="holyloy-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Holyloy Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="holyloy-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
