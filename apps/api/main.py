"""
FastAPI application for the cylinder subscription service.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from apps.core.exceptions import (
    SubscriptionServiceError,
    general_exception_handler,
    service_exception_handler,
    validation_exception_handler,
)
from apps.core.logging import configure_logging
from apps.core.monitoring import init_sentry, metrics
from apps.core.monitoring.prometheus_metrics import registry
from apps.core.settings import settings
from apps.db.session import create_db_and_tables

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info(
        "Subscription API starting up",
        environment=settings.environment,
        version=settings.app_version
    )
    for issue in settings.validate_production_config():
        logger.warning("Configuration issue", issue=issue)

    create_db_and_tables()
    yield
    logger.info("Subscription API shutting down")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    init_sentry(component="api")

    app = FastAPI(
        title="Cylinder Subscriptions API",
        description="Recurring cylinder delivery subscriptions with gateway payment reconciliation",
        version=settings.app_version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    setup_middleware(app)
    setup_monitoring(app)
    setup_exception_handlers(app)
    setup_routers(app)

    return app


def setup_middleware(app: FastAPI):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )


def setup_monitoring(app: FastAPI):
    """Instrument HTTP requests into the service's metrics registry."""
    if not settings.enable_metrics:
        return

    Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        excluded_handlers=["/metrics", "/health"],
        registry=registry,
    ).instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return metrics.get_metrics_response()


def setup_exception_handlers(app: FastAPI):
    app.add_exception_handler(SubscriptionServiceError, service_exception_handler)
    app.add_exception_handler(HTTPException, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


def setup_routers(app: FastAPI):
    from apps.api.routers import admin, subscriptions, webhooks

    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment
        }


# Create application instance
app = create_application()
