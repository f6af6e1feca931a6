"""Monadic error handling.

Services return ``Result[T, AppError]``; routes convert ``Err`` into an
enveloped HTTP error with ``raise_result`` / ``raise_error``.

Usage:
    from core.errors import Ok, Result, AppError, not_found

    async def get_module(session, module_id) -> Result[Module, AppError]:
        module = await session.get(Module, module_id)
        if module is None:
            return not_found("Module", module_id, origin="engine.content")
        return Ok(module)
"""
from .types import (
    Result,
    Ok,
    Err,
    AppError,
    ErrorCode,
    ErrorContext,
)

from .builders import (
    # AI providers (E1xxx)
    external_service_error,
    external_service_unavailable,
    timeout_error,
    # Validation (E2xxx)
    validation_error,
    invalid_date,
    invalid_override_data,
    self_prerequisite,
    # Auth (E3xxx)
    invalid_credentials,
    token_expired,
    token_invalid,
    token_missing,
    insufficient_permissions,
    account_disabled,
    # Database (E4xxx)
    not_found,
    duplicate_key,
    circular_dependency,
    db_connection_failed,
    transaction_failed,
    # Business (E5xxx)
    operation_not_allowed,
    rate_limited,
    # Internal (E9xxx)
    internal_error,
)

from .boundaries import (
    ErrorMapper,
    DatabaseErrorMapper,
    AuthErrorMapper,
    map_errors,
    map_db_errors,
)

from .handlers import (
    AppErrorException,
    register_error_handlers,
    result_to_response,
    raise_error,
    raise_result,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "AppError",
    "ErrorCode",
    "ErrorContext",
    "external_service_error",
    "external_service_unavailable",
    "timeout_error",
    "validation_error",
    "invalid_date",
    "invalid_override_data",
    "self_prerequisite",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "token_missing",
    "insufficient_permissions",
    "account_disabled",
    "not_found",
    "duplicate_key",
    "circular_dependency",
    "db_connection_failed",
    "transaction_failed",
    "operation_not_allowed",
    "rate_limited",
    "internal_error",
    "ErrorMapper",
    "DatabaseErrorMapper",
    "AuthErrorMapper",
    "map_errors",
    "map_db_errors",
    "AppErrorException",
    "register_error_handlers",
    "result_to_response",
    "raise_error",
    "raise_result",
]
