import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("fee_ledger")


class ServiceError(Exception):
    """Base exception for service layer errors."""

    error_code = "ERR_SERVICE"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class ValidationError(ServiceError):
    error_code = "ERR_VALIDATION"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class PermissionDeniedError(ServiceError):
    error_code = "ERR_FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_403_FORBIDDEN, details)


class NotFoundError(ServiceError):
    """Unknown enrollment, class, group, course, route, slab or reservation."""

    error_code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any = None, details: Optional[Dict[str, Any]] = None) -> None:
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} {resource_id} not found"
        merged = {"resource": resource, "id": str(resource_id) if resource_id is not None else None}
        merged.update(details or {})
        super().__init__(message, status.HTTP_404_NOT_FOUND, merged)


class RowNotFoundError(NotFoundError):
    error_code = "ERR_BALANCE_NOT_FOUND"

    def __init__(self, enrollment_id: Any, fee_kind: Any) -> None:
        ServiceError.__init__(
            self,
            f"No {_kind(fee_kind)} fee balance for enrollment {enrollment_id}",
            status.HTTP_404_NOT_FOUND,
            {"resource": "Fee balance", "enrollment_id": str(enrollment_id), "fee_kind": _kind(fee_kind)},
        )


class AlreadyExistsError(ServiceError):
    error_code = "ERR_ALREADY_EXISTS"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class InvalidAmountError(ServiceError):
    error_code = "ERR_INVALID_AMOUNT"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class InvalidConcessionError(ServiceError):
    error_code = "ERR_INVALID_CONCESSION"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class LockedError(ServiceError):
    error_code = "ERR_LOCKED"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class BalanceCancelledError(LockedError):
    error_code = "ERR_BALANCE_CANCELLED"


class ConflictError(ServiceError):
    """Concurrent writes kept colliding after the bounded number of retries."""

    error_code = "ERR_CONFLICT"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class IdempotencyKeyConflictError(ConflictError):
    error_code = "ERR_IDEMPOTENCY_KEY_REUSED"


class TransientError(ServiceError):
    """Timeout or connectivity failure. Safe to retry with the same idempotency key."""

    error_code = "ERR_TRANSIENT"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class StatsUnavailableError(ServiceError):
    error_code = "ERR_STATS_UNAVAILABLE"

    def __init__(self, message: str = "stats unavailable", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


def _kind(fee_kind: Any) -> str:
    return getattr(fee_kind, "value", str(fee_kind))


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.error_code, exc.message, extra={"details": exc.details})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_REQUEST_VALIDATION",
            "message": "Validation error",
            "details": {"errors": jsonable_errors(exc)},
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that are not JSON serializable
    out = []
    for err in exc.errors():
        item = {k: v for k, v in err.items() if k != "ctx"}
        if "ctx" in err:
            item["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        out.append(item)
    return out
