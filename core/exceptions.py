"""
Custom Exception Classes for the Audio Feed API.

Every public repository operation either returns a typed value or raises one
of the exceptions defined here. Each exception carries a human-readable
message, a stable `error_code` and an optional `details` dictionary, so the
error handling middleware can render a consistent JSON body without knowing
where the error came from.

Key Components:
- `FeedAPIException`: The root of the hierarchy. Catching it catches every
  error the service raises on purpose.
- Domain errors: `ValidationError`, `NotFoundError`, `ConflictError`,
  `StorageFailure` and `TransactionFailure` map one-to-one onto the error kinds
  the repositories can surface.
- Boundary errors: `AuthenticationError` and `AuthorizationError` are raised
  by the API dependencies and the profile repository's ownership check.
- `to_http_exception`: Translates an application exception into FastAPI's
  `HTTPException`, keeping HTTP concerns out of the service layer.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException


class FeedAPIException(Exception):
    """Base exception class for the Audio Feed API"""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str = "FEED_API_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FeedAPIException):
    """Raised when input validation fails. Never retried automatically."""

    status_code = 400

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Validation failed for field '{field}': {reason}",
            "VALIDATION_ERROR",
            {"field": field, "value": str(value), "reason": reason},
        )


class NotFoundError(FeedAPIException):
    """Raised when an entity does not exist"""

    status_code = 404

    def __init__(self, entity: str, key: str):
        super().__init__(
            f"{entity} not found: {key}",
            "NOT_FOUND",
            {"entity": entity, "key": key},
        )


class ConflictError(FeedAPIException):
    """Raised when a conditional create finds the entity already present"""

    status_code = 409

    def __init__(self, entity: str, key: str):
        super().__init__(
            f"{entity} already exists: {key}",
            "CONFLICT",
            {"entity": entity, "key": key},
        )


class StorageFailure(FeedAPIException):
    """Raised when the object store cannot complete an operation"""

    status_code = 502

    def __init__(self, reason: str, path: Optional[str] = None):
        super().__init__(
            f"Storage operation failed: {reason}",
            "STORAGE_FAILURE",
            {"reason": reason, "path": path},
        )


class TransactionFailure(FeedAPIException):
    """Raised when a counter transaction exhausts its retry budget or times out"""

    status_code = 503

    def __init__(self, operation: str, key: str, attempts: int, reason: str):
        super().__init__(
            f"Transaction '{operation}' on {key} failed after {attempts} attempt(s): {reason}",
            "TRANSACTION_FAILURE",
            {"operation": operation, "key": key, "attempts": attempts, "reason": reason},
        )


class DatabaseConnectionError(FeedAPIException):
    """Raised when database operations fail"""

    status_code = 500

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Database operation '{operation}' failed: {reason}",
            "DATABASE_ERROR",
            {"operation": operation, "reason": reason},
        )


class AuthenticationError(FeedAPIException):
    """Raised when authentication fails"""

    status_code = 401

    def __init__(self, reason: str):
        super().__init__(
            f"Authentication failed: {reason}",
            "AUTHENTICATION_ERROR",
            {"reason": reason},
        )


class AuthorizationError(FeedAPIException):
    """Raised when an identity tries to mutate something it does not own"""

    status_code = 403

    def __init__(self, identity_id: str, resource: str):
        super().__init__(
            f"Identity {identity_id} may not modify {resource}",
            "FORBIDDEN",
            {"identity_id": identity_id, "resource": resource},
        )


def to_http_exception(exc: FeedAPIException) -> HTTPException:
    """Convert FeedAPIException to FastAPI HTTPException"""
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )
