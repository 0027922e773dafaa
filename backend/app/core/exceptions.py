"""
Custom exceptions and error handlers for consistent error responses.

Provides the ledger/disbursement error taxonomy and global exception handlers.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Malformed or missing required fields. User-correctable."""

    def __init__(self, message: str = "Validation failed", errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_002",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": errors or {}}
        )
        self.errors = errors or {}


class InsufficientFundsError(AppException):
    """Raised when a mutation would push a budget below its invariant. Never clamps."""

    def __init__(self, budget_id: int, available: int, requested: int):
        super().__init__(
            message="Insufficient budget funds",
            error_code="ERR_FUNDS_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={
                "budget_id": budget_id,
                "available": available,
                "requested": requested,
                "shortfall": max(requested - available, 0),
            }
        )
        self.budget_id = budget_id
        self.available = available
        self.requested = requested


class DuplicateEventError(AppException):
    """An event or mutation that was already applied. Callers treat it as success."""

    def __init__(self, message: str = "Event already applied", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_DUPLICATE_001",
            status_code=status.HTTP_200_OK,
            details=details
        )


class UnparsablePayloadError(AppException):
    """Webhook payload did not match any known provider shape."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PAYLOAD_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class GatewayUnavailableError(AppException):
    """Outbound gateway call timed out, failed at transport level, or returned 5xx."""

    def __init__(self, message: str = "Payment gateway unavailable", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_GATEWAY_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class GatewayRejectedError(AppException):
    """Gateway refused the request (4xx). Not retried."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_GATEWAY_002",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details
        )


class ConcurrencyConflictError(AppException):
    """Lock wait timed out or a concurrent writer won a unique-key race."""

    def __init__(self, message: str = "Concurrent update in progress, retry later", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class InvalidStateTransitionError(AppException):
    """Requested workflow event is not valid from the application's current status."""

    def __init__(self, current_status: str, event: str, subject: str = "application"):
        super().__init__(
            message=f"Cannot apply '{event}' to {subject} in status '{current_status}'",
            error_code="ERR_STATE_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"current_status": current_status, "event": event}
        )
        self.current_status = current_status
        self.event = event


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        422: "ERR_VALIDATION",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={"path": request.url.path, "exception_type": type(exc).__name__}
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
