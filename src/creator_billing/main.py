"""
FastAPI application for Creator Billing
Webhook ingestion, manual job triggers, health and metrics
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from . import __version__
from .billing_routes import router as billing_router
from .config import config
from .db.engine import check_connection, init_db
from .exceptions import (
    BillingError,
    billing_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from .logging_config import RequestIDMiddleware, setup_logging
from .services.metrics import get_metrics_collector
from .services.scheduled_jobs import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.ENV, config.LOG_LEVEL)

    try:
        init_db()
    except Exception as e:
        # Health check reports the database as unavailable until it recovers
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    if config.ENABLE_SCHEDULER:
        start_scheduler()
    else:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    if config.ENABLE_SCHEDULER:
        stop_scheduler()


def create_app() -> FastAPI:
    """Build the application with middleware, error handlers and routes"""
    app = FastAPI(title="Creator Billing API", version=__version__, lifespan=lifespan)

    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(billing_router)

    @app.get("/health")
    async def health():
        """Health check endpoint for load balancers and monitoring"""
        if check_connection():
            return {"status": "healthy", "service": "creator-billing", "version": config.BUILD_VERSION}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": "creator-billing", "database": "unavailable"},
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus text exposition"""
        return PlainTextResponse(
            get_metrics_collector().format_prometheus(),
            media_type="text/plain; version=0.0.4",
        )

    return app


app = create_app()
