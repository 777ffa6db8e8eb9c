"""FastAPI JSON API for CareRoster."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.base import BaseHTTPMiddleware

from careroster import __version__
from careroster.core.errors import (
    CareRosterError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from careroster.core.logging import configure_logging
from careroster.db.connection import close_db
from careroster.web.routes import authorizations, deliveries, health, schedules, templates

# Initialize structured logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_db()


app = FastAPI(
    title="CareRoster",
    description="Recurring home-visit scheduling, EVV visit tracking and authorization units",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            logger.info("request_completed", status_code=response.status_code)
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


app.add_middleware(RequestLoggingMiddleware)

# Prometheus Metrics
Instrumentator().instrument(app).expose(app)


# Exception Handlers
_STATUS_BY_ERROR = (
    (ConflictError, 409),
    (NotFoundError, 404),
    (ValidationError, 422),
)


@app.exception_handler(CareRosterError)
async def care_roster_error_handler(request: Request, exc: CareRosterError):
    """Map the domain error taxonomy onto HTTP status codes."""
    status_code = 400
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    logger.info("domain_error", error_type=type(exc).__name__, detail=str(exc))
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Include Routers
app.include_router(health.router)
app.include_router(templates.router)
app.include_router(schedules.router)
app.include_router(deliveries.router)
app.include_router(authorizations.router)
