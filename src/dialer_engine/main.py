"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dialer_engine import __version__
from dialer_engine.api import admin, health, jobs, outcomes, queue
from dialer_engine.config import get_settings, validate_production_settings
from dialer_engine.core.exceptions import DialerEngineError
from dialer_engine.core.log import get_logger, setup_logging
from dialer_engine.core.retry import RetryExhausted
from dialer_engine.db import close_db, init_db
from dialer_engine.dependencies import EngineContainer, build_container

log = get_logger(__name__)


def engine_error_handler(request: Request, exc: DialerEngineError) -> JSONResponse:
    """Render engine errors with their own status code and error code."""
    if exc.status_code >= 500:
        log.error("Request failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def retry_exhausted_handler(request: Request, exc: RetryExhausted) -> JSONResponse:
    """Writes that kept conflicting are reported as a retryable conflict."""
    log.warning("Retries exhausted", path=request.url.path, attempts=exc.attempts)
    last = exc.last_error
    content = last.to_dict() if isinstance(last, DialerEngineError) else {"error": "WRITE_CONFLICT"}
    content.update(message=str(exc), attempts=exc.attempts, retryable=True)
    return JSONResponse(status_code=409, content=content)


def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with structured response."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": _status_code_to_error_type(exc.status_code),
            "message": str(exc.detail),
            "status_code": exc.status_code,
        },
    )


def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with detailed field information."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({
            "field": field or "request",
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": errors,
        },
    )


def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking store internals."""
    log.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An internal error occurred",
        },
    )


def _status_code_to_error_type(status_code: int) -> str:
    """Map HTTP status codes to error type strings."""
    error_types = {
        400: "VALIDATION_ERROR",
        401: "UNAUTHORIZED",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "WRITE_CONFLICT",
        422: "VALIDATION_ERROR",
        503: "SERVICE_UNAVAILABLE",
        504: "TIMEOUT",
    }
    return error_types.get(status_code, "ERROR")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # A container supplied by create_app() owns its own storage
    supplied: EngineContainer | None = getattr(app.state, "container", None)
    owns_storage = supplied is None
    settings = supplied.settings if supplied else get_settings()

    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service_name=settings.service_name,
    )

    log.info(
        "Starting Dialer Engine",
        version=__version__,
        environment=settings.environment,
    )

    for problem in validate_production_settings(settings):
        log.error("Configuration problem", problem=problem)

    if owns_storage:
        log.info("Initializing database")
        await init_db()
        app.state.container = build_container(settings)
        log.info("Database initialized successfully")

    yield

    log.info("Shutting down Dialer Engine")
    if owns_storage:
        await close_db()
        log.info("Database connections closed")


def create_app(container: EngineContainer | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Pre-built service container (tests, embedding)
    """
    settings = container.settings if container else get_settings()

    app = FastAPI(
        title="Dialer Engine",
        description="Outbound-dialer queue transitions and conversion ledger",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    if container is not None:
        app.state.container = container

    # Exception handlers (most specific first)
    app.add_exception_handler(DialerEngineError, engine_error_handler)
    app.add_exception_handler(RetryExhausted, retry_exhausted_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(outcomes.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(queue.router, prefix="/api/v1")

    return app
