"""FastAPI exception handlers.

Every failure leaves the API in the same envelope:
``{"success": false, "error": {...}, "message": ..., "timestamp": ...}``.
"""
from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.logging import get_logger

from .types import AppError, ErrorCode, ErrorContext

log = get_logger("errors.handlers")


class AppErrorException(Exception):
    """Exception wrapper for AppError.

    Route handlers and dependencies raise this to leave the Result world;
    the registered handler renders it.
    """

    def __init__(self, error: AppError):
        self.error = error
        super().__init__(str(error))


def error_body(error: AppError) -> dict:
    return {
        "success": False,
        "error": error.to_dict(),
        "message": error.message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def result_to_response(error: AppError) -> JSONResponse:
    """Log the error and render it with its mapped HTTP status."""
    status_code = error.code.http_status

    log_method = log.warning if status_code < 500 else log.error
    log_method(
        "error_response",
        error_code=error.machine_code,
        error_code_num=error.code.value,
        message=error.message,
        category=error.code.category,
        correlation_id=error.context.correlation_id,
        origin=error.context.origin,
        metadata=error.metadata,
    )

    headers = None
    retry_after = error.metadata.get("retry_after")
    if status_code == 429 and retry_after is not None:
        headers = {"Retry-After": str(max(1, int(round(retry_after))))}

    return JSONResponse(status_code=status_code, content=error_body(error), headers=headers)


async def app_error_handler(request: Request, exc: AppErrorException) -> JSONResponse:
    error = exc.error.with_context(
        request_id=request.headers.get("X-Request-ID"),
        correlation_id=request.headers.get("X-Correlation-ID"),
    )
    return result_to_response(error)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        400: ErrorCode.E2000_VALIDATION_GENERIC,
        401: ErrorCode.E3004_TOKEN_MISSING,
        403: ErrorCode.E3011_RESOURCE_FORBIDDEN,
        404: ErrorCode.E4010_NOT_FOUND,
        405: ErrorCode.E5001_OPERATION_NOT_ALLOWED,
        409: ErrorCode.E5002_STATE_CONFLICT,
        422: ErrorCode.E2000_VALIDATION_GENERIC,
        429: ErrorCode.E5012_RATE_LIMIT_EXCEEDED,
    }
    code = code_map.get(status_code, ErrorCode.E9001_UNEXPECTED_ERROR)

    error = AppError(
        code=code,
        message=str(exc.detail) if exc.detail else f"HTTP {status_code}",
        context=ErrorContext(
            correlation_id=request.headers.get("X-Correlation-ID") or ErrorContext().correlation_id,
            origin="http",
        ),
    )
    response = result_to_response(error)
    # Keep the original status (e.g. 405) even where the code maps elsewhere
    response.status_code = status_code
    return response


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request body/query validation failures, with per-field details."""
    fields = [
        {
            "field": ".".join(str(loc) for loc in err.get("loc", ()) if loc != "body"),
            "message": err.get("msg", "Invalid value"),
            "type": err.get("type", "value_error"),
        }
        for err in exc.errors()
    ]
    error = AppError(
        code=ErrorCode.E2000_VALIDATION_GENERIC,
        message="Request validation failed",
        context=ErrorContext(
            correlation_id=request.headers.get("X-Correlation-ID") or ErrorContext().correlation_id,
            origin="request_validation",
        ),
        metadata={"fields": fields},
    )
    return result_to_response(error)


async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    error = AppError(
        code=ErrorCode.E9001_UNEXPECTED_ERROR,
        message="An unexpected error occurred",
        context=ErrorContext(
            correlation_id=request.headers.get("X-Correlation-ID") or ErrorContext().correlation_id,
            origin="unhandled",
        ),
        cause=exc,
    )
    log.exception(
        "unhandled_exception",
        error_type=type(exc).__name__,
        error_message=str(exc),
        correlation_id=error.context.correlation_id,
    )
    return result_to_response(error)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppErrorException, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


def raise_error(error: AppError) -> None:
    """Raise AppError as exception.

    Usage:
        if module is None:
            raise_error(not_found("Module", module_id).error)
    """
    raise AppErrorException(error)


def raise_result(result) -> None:
    """Raise if ``result`` is Err, otherwise return."""
    if result.is_err():
        raise AppErrorException(result.unwrap_err())
