"""
Custom exceptions and error handlers for consistent error responses.

Every rejected dispatch operation raises a specific subclass so callers can
tell a caller mistake (validation, conflict, not found, permission) from a
system fault (transient).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


# ===================== Validation =====================

class ValidationError(AppException):
    """Malformed input, rejected before any state change."""

    def __init__(self, message: str, error_code: str = "ERR_VALIDATION", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class InvalidCoordinates(ValidationError):
    def __init__(self, longitude: Any, latitude: Any):
        super().__init__(
            message=f"Coordinates out of range: longitude={longitude}, latitude={latitude}",
            error_code="ERR_VALIDATION_COORDINATES",
            details={"longitude": longitude, "latitude": latitude}
        )


class MissingServiceType(ValidationError):
    def __init__(self):
        super().__init__(
            message="Service type is required",
            error_code="ERR_VALIDATION_SERVICE_TYPE"
        )


class UnknownServiceType(ValidationError):
    def __init__(self, service_type: str):
        super().__init__(
            message=f"Unknown service type: {service_type}",
            error_code="ERR_VALIDATION_SERVICE_TYPE",
            details={"service_type": service_type}
        )


# ===================== Conflicts =====================

class ConflictError(AppException):
    """Operation conflicts with the current state. Not retried by the core."""

    def __init__(self, message: str, error_code: str = "ERR_CONFLICT", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class AlreadyAssigned(ConflictError):
    def __init__(self, request_id: int, assigned_driver_id: Optional[int] = None):
        self.request_id = request_id
        self.assigned_driver_id = assigned_driver_id
        super().__init__(
            message=f"Request {request_id} is already assigned",
            error_code="ERR_CONFLICT_ALREADY_ASSIGNED",
            details={"request_id": request_id, "assigned_driver_id": assigned_driver_id}
        )


class InvalidTransition(ConflictError):
    def __init__(self, from_status: Any, to_status: Any):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        super().__init__(
            message=f"Invalid transition from {self.from_status} to {self.to_status}",
            error_code="ERR_CONFLICT_INVALID_TRANSITION",
            details={"from": self.from_status, "to": self.to_status}
        )


class DriverUnavailable(ConflictError):
    def __init__(self, driver_id: int):
        super().__init__(
            message=f"Driver {driver_id} is not available",
            error_code="ERR_CONFLICT_DRIVER_UNAVAILABLE",
            details={"driver_id": driver_id}
        )


class RequestCancelled(ConflictError):
    def __init__(self, request_id: int):
        super().__init__(
            message=f"Request {request_id} has been cancelled",
            error_code="ERR_CONFLICT_REQUEST_CANCELLED",
            details={"request_id": request_id}
        )


class OfferExpired(ConflictError):
    def __init__(self, request_id: int, driver_id: int):
        super().__init__(
            message=f"Offer for request {request_id} to driver {driver_id} has expired",
            error_code="ERR_CONFLICT_OFFER_EXPIRED",
            details={"request_id": request_id, "driver_id": driver_id}
        )


class OfferNotActive(ConflictError):
    def __init__(self, request_id: int, driver_id: int, offer_status: Any):
        offer_status = getattr(offer_status, "value", offer_status)
        super().__init__(
            message=f"Offer for request {request_id} to driver {driver_id} is {offer_status}",
            error_code="ERR_CONFLICT_OFFER_NOT_ACTIVE",
            details={"request_id": request_id, "driver_id": driver_id, "offer_status": offer_status}
        )


class RequestStateChanged(ConflictError):
    """The request changed between validation and update; re-read it before retrying."""

    def __init__(self, request_id: int):
        super().__init__(
            message=f"Request {request_id} changed during the operation; re-read it and retry",
            error_code="ERR_CONFLICT_STATE_CHANGED",
            details={"request_id": request_id}
        )


# ===================== Not found =====================

class NotFoundError(AppException):
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


class RequestNotFound(NotFoundError):
    def __init__(self, request_id: Any):
        super().__init__("Service request", request_id)


class DriverNotFound(NotFoundError):
    def __init__(self, driver_id: Any):
        super().__init__("Driver", driver_id)


class OfferNotFound(NotFoundError):
    def __init__(self, request_id: Any, driver_id: Any):
        super().__init__("Offer", f"{request_id}/{driver_id}")


# ===================== Permissions =====================

class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", error_code: str = "ERR_PERM_001",
                 details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class CannotCancelInProgress(InsufficientPermissionsError):
    def __init__(self, request_id: int):
        super().__init__(
            message=f"Request {request_id} is in progress; only an admin can cancel it",
            error_code="ERR_PERM_CANCEL_IN_PROGRESS",
            details={"request_id": request_id}
        )


class NotAssignedDriver(InsufficientPermissionsError):
    def __init__(self, request_id: int, driver_id: int):
        super().__init__(
            message=f"Driver {driver_id} is not assigned to request {request_id}",
            error_code="ERR_PERM_NOT_ASSIGNED_DRIVER",
            details={"request_id": request_id, "driver_id": driver_id}
        )


class NotRequestOwner(InsufficientPermissionsError):
    def __init__(self, request_id: int):
        super().__init__(
            message=f"You do not have permission to act on request {request_id}",
            error_code="ERR_PERM_NOT_OWNER",
            details={"request_id": request_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# ===================== System faults =====================

class TransientError(AppException):
    """Storage or notification failure. Idempotent callers may retry with backoff."""

    def __init__(self, message: str = "Temporary failure, please retry", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_TRANSIENT",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.error_code)
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
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
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
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
