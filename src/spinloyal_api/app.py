from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from spinloyal_api.core.settings import settings
from spinloyal_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.notifications import NotificationDispatcher, build_backend_from_settings
from .workers import RedemptionExpiryWorker


APP_VERSION = "0.1.0"
SERVICE_NAME = "spinloyal-api"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    dispatcher: NotificationDispatcher = app.state.notification_dispatcher
    expiry_worker = RedemptionExpiryWorker(
        session_factory=_session_factory,
        interval_seconds=settings.redemption_expiry_interval_seconds,
    )
    app.state.redemption_expiry_worker = expiry_worker

    notifications_enabled = settings.notification_worker_enabled
    if notifications_enabled:
        dispatcher.start()
        logger.info(
            "Notification dispatcher enabled",
            backend=type(dispatcher.backend).__name__,
            queue_size=settings.notification_queue_size,
        )
    else:
        logger.info(
            "Notification dispatcher disabled",
            reason="notification_worker_enabled is false",
        )

    expiry_enabled = settings.redemption_expiry_worker_enabled
    if expiry_enabled:
        expiry_worker.start()
        logger.info(
            "Redemption expiry worker enabled",
            interval_seconds=expiry_worker.interval_seconds,
        )
    else:
        logger.info(
            "Redemption expiry worker disabled",
            reason="redemption_expiry_worker_enabled is false",
        )

    try:
        yield
    finally:
        if expiry_enabled and expiry_worker.is_running:
            await expiry_worker.stop()
        if notifications_enabled and dispatcher.is_running:
            await dispatcher.stop()


def create_app() -> FastAPI:
    """Application factory for the reward engine API."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="SpinLoyal API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.notification_dispatcher = NotificationDispatcher(build_backend_from_settings())

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name=SERVICE_NAME,
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
