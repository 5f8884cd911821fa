# ==== TEAMSPEND MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for TeamSpend.

This module provides the FastAPI application with middleware, observability
and error handling for the team budget and expense approval service.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError

from teamspend.settings import settings
from teamspend.storage.db import check_database, close_database, create_schema, init_database
from teamspend.storage.redis import close_redis_client
from teamspend.observability.tracing import init_tracing
from teamspend.observability.metrics import init_metrics, metrics_router
from teamspend.observability.logging import get_logger, init_logging
from teamspend.middleware.correlation import CorrelationMiddleware
from teamspend.routes import expenses, health, teams
from teamspend.services.errors import TeamSpendError


logger = get_logger(__name__)


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown operations.

    Args:
        app (FastAPI): FastAPI application instance

    Yields:
        None: Control back to FastAPI during application runtime
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    init_tracing(settings.SERVICE_NAME)
    init_database()
    await create_schema()
    logger.info("TeamSpend started", environment=settings.APP_ENV)

    yield

    # --► SHUTDOWN SEQUENCE
    await close_redis_client()
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    app = FastAPI(
        title="TeamSpend",
        description="Team budgets, expense approvals and budget alerts",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )

    # --► OBSERVABILITY INITIALIZATION
    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    # CORS must be registered before the correlation middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationMiddleware)

    _register_health_endpoints(app)
    _register_routers(app)
    _register_exception_handlers(app)

    # --► OPENTELEMETRY INSTRUMENTATION
    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    """
    Register liveness and readiness probes.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> JSONResponse:
        """
        Readiness probe; ready only when the database answers.

        Returns:
            JSONResponse: Readiness status, 503 when the database is unreachable
        """
        try:
            ready = await check_database()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Readiness check failed", error=str(e))
            ready = False

        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "service": settings.SERVICE_NAME,
                "environment": settings.APP_ENV
            }
        )


def _register_routers(app: FastAPI) -> None:
    """
    Register application routers with their prefixes and tags.

    Args:
        app (FastAPI): FastAPI application instance
    """
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(expenses.router, prefix="/api/expenses", tags=["expenses"])
    app.include_router(teams.router, prefix="/api/teams", tags=["teams"])


# ==== EXCEPTION HANDLERS ==== #


def _error_envelope(request: Request, status_code: int, error: str, message: str, detail, code: str) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "detail": detail,
            "correlation_id": correlation_id,
            "code": code
        }
    )


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Register handlers rendering every error in the same envelope.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(TeamSpendError)
    async def domain_error_handler(request: Request, exc: TeamSpendError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return _error_envelope(request, exc.status_code, exc.error, exc.message, exc.detail, exc.code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_envelope(
            request,
            422,
            "Validation failed",
            "Request body or parameters are invalid",
            jsonable_errors(exc),
            "VALIDATION_ERROR"
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc) -> JSONResponse:
        return _error_envelope(
            request,
            404,
            "Not found",
            "The requested resource was not found",
            "The requested resource was not found",
            "NOT_FOUND"
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path, error=str(exc))
        return _error_envelope(
            request,
            500,
            "Internal server error",
            "An unexpected error occurred",
            None,
            "INTERNAL_ERROR"
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation errors reduced to JSON-safe location, message and type."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# ==== APPLICATION INSTANCE ==== #

app = create_app()
