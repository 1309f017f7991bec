"""
Error Handlers - Translate exceptions into the standard error body.

    {"error": {"code": "<error-code>", "message": "<message>"}}

Internal errors are logged in full and returned with a generic message.
"""

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from structlog import get_logger

from voucherflow.exceptions import SettlementError
from voucherflow.models.api import ErrorCode, ErrorDetail, ErrorResponse
from voucherflow.observability.metrics import metrics, route_label

logger = get_logger(__name__)

HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.FAILED_PRECONDITION: status.HTTP_412_PRECONDITION_FAILED,
    ErrorCode.RESOURCE_EXHAUSTED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

INTERNAL_ERROR_MESSAGE = "An internal error occurred"


def error_response(code: ErrorCode, message: str) -> JSONResponse:
    """Build the standard error body with its HTTP status."""
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    headers = {"WWW-Authenticate": "Bearer"} if code == ErrorCode.UNAUTHENTICATED else None
    return JSONResponse(
        status_code=HTTP_STATUS_BY_CODE[code],
        content=body.model_dump(mode="json"),
        headers=headers,
    )


async def settlement_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a typed settlement error."""
    assert isinstance(exc, SettlementError)

    if exc.code == ErrorCode.INTERNAL:
        metrics.record_error(type(exc).__name__, route_label(request.scope))
        logger.error(
            "internal_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=exc,
        )
        return error_response(ErrorCode.INTERNAL, INTERNAL_ERROR_MESSAGE)

    logger.info(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        code=exc.code.value,
        error_type=type(exc).__name__,
        message=exc.message,
    )
    return error_response(exc.code, exc.message)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything untyped is an internal error."""
    metrics.record_error(type(exc).__name__, route_label(request.scope))
    logger.error(
        "unhandled_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc,
    )
    return error_response(ErrorCode.INTERNAL, INTERNAL_ERROR_MESSAGE)


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log detailed validation errors and reject as invalid-argument."""
    assert isinstance(exc, RequestValidationError)

    # Sanitize errors for JSON serialization (ctx may contain non-serializable objects)
    sanitized_errors: list[dict[str, Any]] = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )

    message = "; ".join(
        f"{'.'.join(str(part) for part in e['loc'] or ())}: {e['msg']}" for e in sanitized_errors
    )
    return error_response(ErrorCode.INVALID_ARGUMENT, message or "Invalid request")


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error handlers on an application."""
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
