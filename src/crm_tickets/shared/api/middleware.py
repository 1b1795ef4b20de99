"""
Shared API Middleware
======================

Request context middleware and the exception handlers that turn the
application error taxonomy into JSON responses.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from crm_tickets.config import settings
from crm_tickets.core import ApplicationException
from crm_tickets.shared.infrastructure.logging import correlation_id_var, get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation id to the request and logs its outcome.

    The id is taken from the ``X-Correlation-ID`` header when the caller
    sends one, echoed back on the response, and visible to every log
    record emitted while the request is handled.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "duration_ms": int((time.perf_counter() - start) * 1000)
                }
            )
            raise
        finally:
            correlation_id_var.reset(token)

        elapsed = time.perf_counter() - start
        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"

        # Health probes are frequent and uninteresting
        if request.url.path != "/health":
            logger.info(
                "Request completed",
                extra={
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int(elapsed * 1000)
                }
            )
        return response


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or "unknown"


async def application_exception_handler(
    request: Request,
    exc: ApplicationException
) -> JSONResponse:
    """Render an ApplicationException with the status code it declares."""
    correlation_id = _correlation_id(request)
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "Request rejected",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "error_type": exc.error_type,
            "error_message": exc.message,
            "status_code": exc.http_status
        }
    )

    body = exc.to_dict()
    body["correlation_id"] = correlation_id
    return JSONResponse(status_code=exc.http_status, content=body)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; internals are only echoed in development."""
    correlation_id = _correlation_id(request)
    logger.exception(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if settings.environment == "development" else None
        }
    )
