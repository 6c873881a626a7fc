"""API error handling: service exceptions to a uniform JSON envelope."""

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.services.errors import (
    BillingRunConflict,
    ConcurrencyConflict,
    DrawdownError,
    InsufficientBalance,
    InvalidStateTransition,
    NotFoundError,
    StorageFailure,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[DrawdownError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (InsufficientBalance, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (BillingRunConflict, status.HTTP_409_CONFLICT),
    (StorageFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: DrawdownError) -> int:
    for error_type, http_status in ERROR_STATUS:
        if isinstance(error, error_type):
            return http_status
    return status.HTTP_400_BAD_REQUEST


def error_response(error: DrawdownError) -> Dict[str, Any]:
    """Create a standardized error response."""
    body: Dict[str, Any] = {"code": error.code, "message": error.message}
    if isinstance(error, ValidationFailed):
        body["errors"] = error.errors
        body["warnings"] = error.warnings
    if isinstance(error, InsufficientBalance):
        body["shortfall"] = str(error.shortfall)
    if isinstance(error, InvalidStateTransition):
        body["from_state"] = error.from_state
        body["to_state"] = error.to_state
    return {"success": False, "error": body}


async def drawdown_error_handler(request: Request, exc: DrawdownError) -> JSONResponse:
    http_status = status_for(exc)
    if http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=http_status, content=error_response(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DrawdownError, drawdown_error_handler)


__all__ = ["error_response", "register_error_handlers", "status_for"]
