"""
FastAPI application setup with monitoring, rate limiting, and error handling.
"""
import logging
import time

import structlog
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlmodel import Session
from starlette.routing import Match

from bidpeek.api.limiter import limiter
from bidpeek.core.settings import settings
from bidpeek.core.exceptions import (
    BidPeekException,
    bidpeek_exception_handler,
    http_exception_handler,
    general_exception_handler,
)
from bidpeek.core.monitoring import (
    init_sentry,
    metrics,
    increment_http_requests,
    observe_http_request_duration,
)
from bidpeek.core.monitoring.health_checks import basic_health_check, readiness_check
from bidpeek.db.session import create_db_and_tables, get_session

# Setup structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, settings.log_level, logging.INFO)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="BidPeek Entitlements API",
        description="Scan metering, entitlement resolution and payment webhook reconciliation",
        version=settings.app_version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    setup_middleware(app)
    setup_monitoring(app)
    setup_exception_handlers(app)
    setup_routers(app)
    setup_event_handlers(app)

    return app


def setup_middleware(app: FastAPI):
    """CORS for the mobile and web clients."""
    cors_origins = settings.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Stripe-Signature"] if settings.is_production else ["*"],
        max_age=3600 if settings.is_production else 600,
    )
    logger.info("CORS configured", allowed_origins=cors_origins, environment=settings.environment)


def _route_template(request: Request) -> str:
    """Route path template, so per-device paths share one metrics label."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "unmatched"


def setup_monitoring(app: FastAPI):
    """Request metrics middleware and the /metrics endpoint."""

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        endpoint = _route_template(request)
        status_code = str(response.status_code)

        increment_http_requests(request.method, endpoint, status_code)
        observe_http_request_duration(request.method, endpoint, duration)

        return response

    if settings.enable_metrics:
        @app.get("/metrics", include_in_schema=False)
        async def get_metrics():
            """Expose Prometheus metrics."""
            return metrics.get_metrics_response()


def setup_exception_handlers(app: FastAPI):
    """Render every error as ``{"error": {...}}``."""

    app.add_exception_handler(BidPeekException, bidpeek_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with detailed response."""
        logger.warning(
            "Validation error",
            path=request.url.path,
            method=request.method,
            errors=str(exc.errors())
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": {
                    "message": "Input validation failed",
                    "type": "ValidationError",
                    "details": {"errors": [
                        {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                        for error in exc.errors()
                    ]},
                    "status_code": status.HTTP_422_UNPROCESSABLE_ENTITY
                }
            }
        )


def setup_routers(app: FastAPI):
    """Mount the routers and health endpoints."""

    from bidpeek.api.routers import scans, subscriptions, webhooks

    app.include_router(scans.router)
    app.include_router(subscriptions.router)
    app.include_router(webhooks.router)

    @app.get("/healthz")
    def health_check(request: Request):
        """Basic health check endpoint."""
        logger.debug("Health check requested", remote_addr=get_remote_address(request))
        return basic_health_check()

    @app.get("/readyz")
    def readiness_check_endpoint(session: Session = Depends(get_session)):
        """Readiness check against the store."""
        result = readiness_check(session)
        if result["status"] != "ready":
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
        return result


def setup_event_handlers(app: FastAPI):
    """Application startup and shutdown."""

    @app.on_event("startup")
    async def startup_event():
        logger.info("BidPeek entitlements API starting up", environment=settings.environment)

        for issue in settings.validate_production_config():
            logger.warning("Configuration issue", issue=issue)

        create_db_and_tables()
        init_sentry()

        logger.info("BidPeek entitlements API started successfully")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("BidPeek entitlements API shutting down")


# Create application instance
app = create_application()
