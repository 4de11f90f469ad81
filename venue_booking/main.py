"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .config import get_settings
from .database import DatabaseManager
from .middleware import ErrorHandlerMiddleware, LoggingMiddleware, RateLimiterMiddleware
from .schemas.common import HealthResponse, MetricsResponse
from .services.notification_service import CeleryNotifier, Notifier
from .services.rate_limit_service import RateLimiter
from .unit_of_work import UnitOfWork
from .utils.health_check import get_health_status
from .utils.logging_config import setup_logging
from .utils.metrics import metrics
from .utils.timezone import DateOracle

logger = logging.getLogger(__name__)


def create_app(
    database: Optional[DatabaseManager] = None,
    notifier: Optional[Notifier] = None,
    create_tables: bool = False,
    check_broker: bool = True,
) -> FastAPI:
    """
    Build the application.

    Args:
        database: Database manager to use; one is created from settings when omitted
        notifier: Notification channel; defaults to the Celery queue
        create_tables: Create tables on startup (development and tests)
        check_broker: Include the Redis broker in ``/health``
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Venue Booking service")
        db = database or DatabaseManager()
        if db.engine is None:
            await db.initialize(create_tables=create_tables)

        app.state.database = db
        app.state.oracle = DateOracle()
        app.state.notifier = notifier or CeleryNotifier()
        app.state.rate_limiter = RateLimiter(UnitOfWork(db.session_factory))
        yield
        logger.info("Shutting down Venue Booking service")
        await db.close()

    app = FastAPI(
        title="Venue Booking API",
        description=(
            "Booking requests for a single venue calendar. Confirmed bookings and "
            "bookings with a verified deposit block their dates; everything else "
            "can be renegotiated."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "booking", "description": "Public booking operations"},
            {"name": "health", "description": "Health and monitoring endpoints"},
        ],
        lifespan=lifespan,
    )

    # Added innermost first; CORS ends up outermost
    app.add_middleware(ErrorHandlerMiddleware, debug=settings.debug)
    app.add_middleware(
        RateLimiterMiddleware,
        enabled=settings.enable_rate_limiting,
        trusted_proxies=settings.trusted_proxies,
    )
    app.add_middleware(LoggingMiddleware, log_requests=settings.enable_request_logging)

    if settings.debug:
        cors_origins = ["*"]
        cors_allow_credentials = False
    else:
        cors_origins = settings.cors_origins
        cors_allow_credentials = settings.cors_allow_credentials

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        expose_headers=settings.cors_expose_headers,
    )

    app.include_router(api_router)

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health_check(request: Request):
        """Store and broker connectivity."""
        health = await get_health_status(request.app.state.database, check_broker=check_broker)
        status_code = 503 if health["status"] == "unhealthy" else 200
        return JSONResponse(status_code=status_code, content=health)

    @app.get("/metrics", response_model=MetricsResponse, tags=["health"])
    async def get_metrics():
        """Concurrency and rate-limit counters since process start."""
        return MetricsResponse(counters=metrics.snapshot())

    return app


def build_default_app() -> FastAPI:
    settings = get_settings()
    setup_logging(
        log_level="DEBUG" if settings.debug else settings.log_level,
        log_file=settings.log_file or ("logs/venue_booking.log" if settings.environment == "production" else None),
        enable_json_logging=settings.enable_json_logging or settings.environment == "production",
    )
    return create_app()


app = build_default_app()
