"""
Application Middleware for the Audio Feed API.

This module defines the FastAPI middleware responsible for cross-cutting
concerns: request correlation, error handling, performance monitoring, request
validation and security headers. These components process every HTTP request
and response; the WebSocket feed endpoint is not routed through them.

Key Middleware Components:
- `CorrelationMiddleware`: Assigns a correlation ID to every incoming request
  (or reuses `X-Correlation-ID` / `X-Request-ID`), which is then attached to
  every log line written while the request is served.
- `ErrorHandlingMiddleware`: Centralized error handler. Repository errors
  (`FeedAPIException` subclasses) keep their status code and error code;
  FastAPI `HTTPException`s pass through with their status; anything else
  becomes a 500 `INTERNAL_ERROR` and is logged with its traceback.
- `PerformanceMiddleware`: Logs the start and end of each request, adds the
  `X-Process-Time` header, warns on slow requests and records request metrics
  in the process-wide `MetricsCollector`.
- `SecurityHeadersMiddleware`: Adds standard security headers to every
  response.
- `RequestValidationMiddleware`: Rejects oversized requests and request
  bodies with an unsupported content type before they reach the routers.
- `request_validation_exception_handler`: Renders FastAPI's request
  validation failures (missing or mistyped fields) as a 422 in the same
  error envelope.

Ordering:
Starlette runs the middleware added last first. `main.py` adds
`CorrelationMiddleware` last so the correlation ID is set before any other
middleware logs, and `ErrorHandlingMiddleware` first so it sits closest to
the routers.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Any, Optional
from fastapi import Request, Response, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import get_settings
from .logging_config import set_correlation_id, get_logger
from .exceptions import FeedAPIException
from .performance import RequestMetrics, get_metrics_collector

logger = get_logger("core.middleware")

SLOW_REQUEST_SECONDS = 1.0


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation IDs to requests"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or str(uuid.uuid4())
        )

        set_correlation_id(correlation_id)

        # Add to request state for access in endpoints
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for centralized error handling"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except FeedAPIException as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log(
                f"Application error: {e.message}",
                extra={
                    "error_type": type(e).__name__,
                    "error_code": e.error_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return create_error_response(
                type(e).__name__,
                e.error_code,
                e.message,
                status_code=e.status_code,
                correlation_id=getattr(request.state, "correlation_id", None),
                details=e.details,
            )

        except HTTPException as e:
            logger.warning(
                f"HTTP exception: {e.status_code} - {e.detail}",
                extra={
                    "status_code": e.status_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return create_error_response(
                "HTTPException",
                f"HTTP_{e.status_code}",
                e.detail,
                status_code=e.status_code,
                correlation_id=getattr(request.state, "correlation_id", None),
            )

        except Exception as e:
            logger.error(
                f"Unexpected error: {str(e)}",
                extra={
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
                exc_info=True,
            )
            return create_error_response(
                "InternalServerError",
                "INTERNAL_ERROR",
                "An unexpected error occurred",
                status_code=500,
                correlation_id=getattr(request.state, "correlation_id", None),
            )


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Middleware for performance monitoring and logging"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query_params": dict(request.query_params),
                "user_agent": request.headers.get("user-agent"),
                "client_ip": get_client_ip(request),
            },
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        process_time_ms = round(process_time * 1000, 2)
        response.headers["X-Process-Time"] = str(process_time_ms)

        # Record against the route template so ids don't explode the key space
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        get_metrics_collector().record_request(
            RequestMetrics(
                endpoint=endpoint,
                method=request.method,
                status_code=response.status_code,
                duration_ms=process_time_ms,
                timestamp=_utc_timestamp(),
            )
        )

        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": process_time_ms,
            },
        )

        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "process_time_ms": process_time_ms,
                    "threshold_exceeded": True,
                },
            )

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware adding standard security headers"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for header, value in self.HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class RequestValidationMiddleware(BaseHTTPMiddleware):
    """Middleware for request validation"""

    ALLOWED_CONTENT_TYPES = (
        "application/json",
        "application/x-www-form-urlencoded",
        "multipart/form-data",
    )

    def __init__(self, app: ASGIApp, max_request_size: Optional[int] = None):
        super().__init__(app)
        # Uploads carry multipart framing on top of the payload itself
        self.max_request_size = max_request_size or (
            get_settings().max_upload_bytes + 1024 * 1024
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")
        try:
            declared_size = int(content_length) if content_length else 0
        except ValueError:
            return create_error_response(
                "BadRequest",
                "INVALID_CONTENT_LENGTH",
                f"Content-Length '{content_length}' is not a number",
                status_code=400,
            )

        if declared_size > self.max_request_size:
            logger.warning(
                f"Request too large: {declared_size} bytes",
                extra={
                    "content_length": declared_size,
                    "max_size": self.max_request_size,
                    "path": request.url.path,
                },
            )
            return create_error_response(
                "PayloadTooLarge",
                "REQUEST_TOO_LARGE",
                f"Request size exceeds maximum allowed size of {self.max_request_size} bytes",
                status_code=413,
            )

        # Bodiless POSTs (like, play) carry no content type
        has_body = declared_size > 0 or "transfer-encoding" in request.headers
        if request.method in ("POST", "PUT", "PATCH") and has_body:
            content_type = request.headers.get("content-type", "")
            if not any(allowed in content_type for allowed in self.ALLOWED_CONTENT_TYPES):
                logger.warning(
                    f"Invalid content type: {content_type}",
                    extra={
                        "content_type": content_type,
                        "path": request.url.path,
                        "method": request.method,
                    },
                )
                return create_error_response(
                    "UnsupportedMediaType",
                    "INVALID_CONTENT_TYPE",
                    f"Content type '{content_type}' is not supported",
                    status_code=415,
                )

        return await call_next(request)


def _utc_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, considering proxy headers"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def create_error_response(
    error_type: str,
    error_code: str,
    message: Any,
    status_code: int = 400,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_data = {"error": {"type": error_type, "code": error_code, "message": message}}

    if correlation_id:
        error_data["error"]["correlation_id"] = correlation_id

    if details:
        error_data["error"]["details"] = details

    return JSONResponse(status_code=status_code, content=error_data)


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        f"Request validation failed: {len(errors)} error(s)",
        extra={"path": request.url.path, "method": request.method},
    )
    return create_error_response(
        "RequestValidationError",
        "VALIDATION_ERROR",
        "Request validation failed",
        status_code=422,
        correlation_id=getattr(request.state, "correlation_id", None),
        details={"errors": errors},
    )
