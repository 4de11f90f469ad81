"""
Error handling middleware mapping service errors to HTTP responses.
"""

import logging
import traceback
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import OperationalError, TimeoutError as SQLTimeoutError
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.exceptions import (
    ConcurrencyError,
    ErrorCode,
    NotFoundError,
    StoreError,
    TransitionDeniedError,
    ValidationError,
    VenueBookingError,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.CALENDAR_DATE_INVALID: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TRANSITION_DENIED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.BOOKING_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.TOKEN_EXPIRED: status.HTTP_410_GONE,
    ErrorCode.LOCK_TIMEOUT: status.HTTP_409_CONFLICT,
    ErrorCode.TRANSACTION_TIMEOUT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.STORE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_body(error: VenueBookingError, error_id: str) -> dict:
    return {
        "error": error.to_dict(),
        "error_id": error_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn exceptions escaping a handler into structured JSON errors."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        error_id = str(uuid4())

        try:
            return await call_next(request)
        except Exception as exc:
            self._log_error(request, exc, error_id)
            return self._handle_exception(exc, error_id)

    def _handle_exception(self, exc: Exception, error_id: str) -> JSONResponse:
        if isinstance(exc, VenueBookingError):
            error = exc
        elif isinstance(exc, PydanticValidationError):
            field_errors = {}
            for item in exc.errors():
                field_path = ".".join(str(loc) for loc in item["loc"])
                field_errors.setdefault(field_path, []).append(item["msg"])
            error = ValidationError("Request validation failed", field_errors=field_errors)
        elif isinstance(exc, (OperationalError, SQLTimeoutError)):
            error = StoreError(
                "Database service temporarily unavailable",
                details={"error_type": type(exc).__name__},
                retry_after=30,
            )
        else:
            error = VenueBookingError(
                "An unexpected error occurred",
                error_code=ErrorCode.INTERNAL_ERROR,
                details={"error_type": type(exc).__name__} if self.debug else None,
            )

        body = error_body(error, error_id)
        if self.debug and not isinstance(exc, VenueBookingError):
            body["debug"] = {"exception": str(exc), "traceback": traceback.format_exc()}

        headers = {"Retry-After": str(error.retry_after)} if error.retry_after else {}
        return JSONResponse(
            status_code=STATUS_MAP.get(error.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content=body,
            headers=headers,
        )

    def _log_error(self, request: Request, exc: Exception, error_id: str) -> None:
        context = {
            "error_id": error_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }

        if isinstance(exc, (ValidationError, NotFoundError, TransitionDeniedError)):
            logger.warning(
                f"Client error [{error_id}]: {exc.message}",
                extra={**context, "error_code": exc.error_code.value, "details": exc.details},
            )
        elif isinstance(exc, (ConcurrencyError, StoreError)):
            logger.error(
                f"System error [{error_id}]: {exc.message}",
                extra={**context, "error_code": exc.error_code.value, "details": exc.details},
            )
        elif isinstance(exc, VenueBookingError):
            logger.warning(
                f"Request refused [{error_id}]: {exc.message}",
                extra={**context, "error_code": exc.error_code.value},
            )
        else:
            logger.error(
                f"Unexpected error [{error_id}]: {exc}",
                extra={**context, "error_type": type(exc).__name__},
                exc_info=exc,
            )
