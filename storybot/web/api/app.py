"""FastAPI application setup for the story API.

This module creates the FastAPI application with lifespan management, error
handlers and routing. The API is read-only; every change to a story goes
through the bot.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storybot import __version__
from storybot.shared.config import get_settings
from storybot.shared.database import close_database, init_database
from storybot.web.api.routers.stories import router as stories_router
from storybot.web.api.schemas import ErrorDetail, ErrorResponse, ValidationErrorResponse
from storybot.web.crud import ConflictError, DatabaseOperationError, NotFoundError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialize the database on startup and dispose of it on shutdown.

    Args:
        app: FastAPI application instance

    Yields:
        None: Control to the application
    """
    settings = get_settings()

    try:
        await init_database()
        app.state.settings = settings
        yield
    finally:
        await close_database()


settings = get_settings()

if settings.api_docs_enabled:
    docs_url = "/docs"
    redoc_url = "/redoc"
    openapi_url = "/openapi.json"
else:
    docs_url = None
    redoc_url = None
    openapi_url = None

api = FastAPI(
    title="Storybot API",
    description="Read-only REST API for round-robin stories",
    version=__version__,
    lifespan=lifespan,
    docs_url=docs_url,
    redoc_url=redoc_url,
    openapi_url=openapi_url,
)


@api.middleware("http")
async def add_request_id_middleware(request: Request, call_next):
    """Add request ID to request state for tracking."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


def error_response(request: Request, status_code: int, detail: str, error_type: str) -> JSONResponse:
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
    response = ErrorResponse(
        detail=detail,
        type=error_type,
        timestamp=datetime.now(timezone.utc),
        request_id=request_id,
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


def internal_detail(prefix: str, exc: Exception) -> str:
    # Don't expose internals outside development
    if settings.verbose_errors_enabled and settings.is_development:
        return f"{prefix}: {exc}"
    return "Internal server error"


@api.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors.

    Returns:
        JSONResponse: 422 with one entry per invalid field
    """
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    errors = []
    for error in exc.errors():
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(ErrorDetail(code=error["type"], message=error["msg"], field=field_path))

    logger.warning(
        "Validation error",
        extra={
            "request_id": request_id,
            "url": str(request.url),
            "method": request.method,
        },
    )

    response = ValidationErrorResponse(
        detail="Request validation failed",
        errors=errors,
        timestamp=datetime.now(timezone.utc),
        request_id=request_id,
    )
    return JSONResponse(status_code=422, content=response.model_dump(mode="json"))


@api.exception_handler(NotFoundError)
async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.info(f"Resource not found: {exc}")
    return error_response(request, 404, str(exc), "not_found_error")


@api.exception_handler(ConflictError)
async def conflict_exception_handler(request: Request, exc: ConflictError) -> JSONResponse:
    logger.warning(f"Conflict error: {exc}")
    return error_response(request, 409, str(exc), "conflict_error")


@api.exception_handler(DatabaseOperationError)
async def database_exception_handler(
    request: Request, exc: DatabaseOperationError
) -> JSONResponse:
    logger.error(f"Database operation error: {exc}")
    return error_response(request, 500, internal_detail("Database error", exc), "database_error")


@api.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions globally."""
    logger.exception(f"Unhandled exception on {request.method} {request.url}")
    return error_response(
        request, 500, internal_detail("Internal server error", exc), "internal_error"
    )


api.include_router(stories_router)


@api.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for monitoring.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "version": __version__}
