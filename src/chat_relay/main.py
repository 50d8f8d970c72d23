"""
Chat Relay - authenticated streaming chat service.

Verifies Supabase-issued bearer tokens, stores both sides of every chat
turn in the Supabase ``chat_history`` table and relays streamed OpenAI
completions back to the browser.

Endpoints:
    Chat:
        - POST /api/chat - Persist the user turn and stream the answer (SSE)
        - GET /api/chat/history - Stored turns of the caller, oldest first

    Health:
        - GET /health - Health check
        - GET /health/live - Liveness check

Last Grunted: 10/18/2026 09:10:00 AM UTC
"""
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_relay.config import get_settings
from chat_relay.routers import chat
from chat_relay.services.clients import close_clients
from chat_relay.services.errors import (
    ChatRelayError,
    error_response,
    internal_error,
    response_for,
)


# ============================================================================
# Logging Configuration
# ============================================================================

def configure_logging() -> None:
    """
    Configure structured logging with structlog.

    Sets up structlog with JSON output for production and pretty printing
    for development (when LOG_FORMAT=console).
    """
    settings = get_settings()
    log_level = settings.log_level.upper()

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level, logging.INFO),
    )

    # Shared processors
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "console":
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging before creating logger
configure_logging()
logger = structlog.get_logger("chat-relay")


# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup and shutdown events.

    Backend clients are created lazily on first use; shutdown releases
    their connection pools.
    """
    settings = get_settings()
    logger.info(
        "chat_relay.startup",
        model=settings.chat_model,
        table=settings.chat_history_table,
        max_duration_seconds=settings.max_duration_seconds,
    )

    yield

    logger.info("chat_relay.shutdown")
    await close_clients()
    logger.info("chat_relay.shutdown.complete")


# ============================================================================
# Application Instance
# ============================================================================

app = FastAPI(
    title="Chat Relay",
    description="Authenticated streaming chat backed by Supabase and OpenAI",
    version="0.1.0",
    lifespan=lifespan,
)


# ============================================================================
# CORS Middleware
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Response-Time"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ChatRelayError)
async def chat_relay_exception_handler(
    request: Request,
    exc: ChatRelayError
) -> JSONResponse:
    """
    Render taxonomy errors as ``{"error": message}``.

    Upstream failures are rendered with the generic message only.
    """
    logger.warning(
        "chat_relay.request_error",
        path=request.url.path,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        detail=exc.message,
    )
    return response_for(exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI parameter validation errors (400)."""
    errors = exc.errors()
    message = errors[0].get("msg", "Validation error") if errors else "Request validation failed"

    logger.warning(
        "chat_relay.validation_error",
        path=request.url.path,
        message=message,
    )
    return error_response(message, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException
) -> JSONResponse:
    """Handle routing errors (404, 405, ...) with the flat error body."""
    logger.warning(
        "chat_relay.http_error",
        path=request.url.path,
        status_code=exc.status_code,
        detail=str(exc.detail),
    )
    return error_response(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Global exception handler for unhandled errors.

    Logs the full exception and returns a generic 500 without leaking
    internal detail.
    """
    logger.exception(
        "chat_relay.unhandled_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return internal_error()


# ============================================================================
# Request Logging Middleware
# ============================================================================

@app.middleware("http")
async def log_requests(request: Request, call_next: Callable):
    """
    Log every request with timing information.

    Binds request id, path and method into the structlog context so all
    log events of the request carry them.
    """
    request_id = request.headers.get("X-Request-ID", "-")
    start_time = time.perf_counter()

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    logger.info("chat_relay.request.start")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # For streamed responses this is time-to-headers, not time-to-last-byte
    logger.info(
        "chat_relay.request.complete",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )

    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    return response


# ============================================================================
# Routers
# ============================================================================

app.include_router(chat.router, tags=["chat"])


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for service monitoring.

    Returns:
        dict: Status information including service name and version
    """
    return {
        "status": "ok",
        "service": "chat-relay",
        "version": "0.1.0",
    }


@app.get("/health/live")
async def liveness_check():
    """Simple check that the service is running and responsive."""
    return {"status": "alive"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run("chat_relay.main:app", host="0.0.0.0", port=8000)
