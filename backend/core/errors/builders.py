"""Error builders.

Each builder returns ``Err[AppError]`` so services can ``return not_found(...)``
directly; use ``.error`` when the bare AppError is needed.
"""
from uuid import UUID

from .types import AppError, ErrorCode, ErrorContext, Err


def _err(
    code: ErrorCode,
    message: str,
    *,
    origin: str = "",
    error_code: str | None = None,
    user_id: str | None = None,
    cause: Exception | None = None,
    **metadata,
) -> Err[AppError]:
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin, user_id=user_id),
        metadata={k: v for k, v in metadata.items() if v is not None},
        cause=cause,
        error_code=error_code,
    ))


def _with_reason(message: str, reason: str) -> str:
    return f"{message}: {reason}" if reason else message


# =============================================================================
# AI providers (E1xxx)
# =============================================================================

def external_service_error(
    service: str,
    reason: str = "",
    *,
    origin: str = "",
    cause: Exception | None = None,
) -> Err[AppError]:
    return _err(
        ErrorCode.E1011_EXTERNAL_SERVICE_ERROR,
        _with_reason(f"External service '{service}' failed", reason),
        origin=origin,
        cause=cause,
        service=service,
    )


def external_service_unavailable(service: str, reason: str = "", origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E1010_EXTERNAL_SERVICE_UNAVAILABLE,
        _with_reason(f"External service '{service}' unavailable", reason),
        origin=origin,
        service=service,
    )


def timeout_error(operation: str, timeout_seconds: float, origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E1002_TIMEOUT,
        f"Operation '{operation}' timed out after {timeout_seconds}s",
        origin=origin,
        operation=operation,
        timeout_seconds=timeout_seconds,
    )


# =============================================================================
# Validation (E2xxx)
# =============================================================================

def validation_error(
    message: str,
    *,
    code: ErrorCode = ErrorCode.E2000_VALIDATION_GENERIC,
    field: str | None = None,
    value: str | None = None,
    error_code: str | None = None,
    origin: str = "",
    **metadata,
) -> Err[AppError]:
    return _err(code, message, origin=origin, error_code=error_code, field=field, value=value, **metadata)


def invalid_date(field: str, value: str, origin: str = "") -> Err[AppError]:
    return validation_error(
        f"Invalid date for '{field}': '{value}'",
        code=ErrorCode.E2012_INVALID_DATE,
        field=field,
        value=value,
        origin=origin,
    )


def invalid_override_data(reason: str, origin: str = "") -> Err[AppError]:
    return validation_error(
        f"Invalid override data: {reason}",
        code=ErrorCode.E2030_INVALID_OVERRIDE_DATA,
        origin=origin,
    )


def self_prerequisite(entity: str, id: str | UUID, origin: str = "") -> Err[AppError]:
    """A level or module listed as its own prerequisite."""
    return validation_error(
        f"{entity} cannot be its own prerequisite",
        code=ErrorCode.E2031_SELF_PREREQUISITE,
        error_code=f"{entity.upper()}_SELF_PREREQUISITE",
        entity_id=str(id),
        origin=origin,
    )


# =============================================================================
# Authentication / authorization (E3xxx)
# =============================================================================

def invalid_credentials(origin: str = "") -> Err[AppError]:
    return _err(ErrorCode.E3001_INVALID_CREDENTIALS, "Invalid email or password", origin=origin)


def token_expired(origin: str = "") -> Err[AppError]:
    return _err(ErrorCode.E3002_TOKEN_EXPIRED, "Authentication token has expired", origin=origin)


def token_invalid(reason: str = "", origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E3003_TOKEN_INVALID,
        _with_reason("Invalid authentication token", reason),
        origin=origin,
    )


def token_missing(origin: str = "") -> Err[AppError]:
    return _err(ErrorCode.E3004_TOKEN_MISSING, "Authentication token required", origin=origin)


def insufficient_permissions(
    action: str,
    resource: str | None = None,
    user_id: str | None = None,
    origin: str = "",
    error_code: str | None = None,
) -> Err[AppError]:
    """Role or ownership check failed (403)."""
    msg = f"Insufficient permissions to {action}"
    if resource:
        msg += f" on {resource}"
    return _err(
        ErrorCode.E3010_INSUFFICIENT_PERMISSIONS,
        msg,
        origin=origin,
        user_id=user_id,
        error_code=error_code,
        action=action,
        resource=resource,
    )


def account_disabled(user_id: str | None = None, origin: str = "") -> Err[AppError]:
    return _err(ErrorCode.E3020_ACCOUNT_DISABLED, "Account has been disabled", origin=origin, user_id=user_id)


# =============================================================================
# Database and resources (E4xxx)
# =============================================================================

def not_found(
    entity: str,
    id: str | UUID | None = None,
    origin: str = "",
) -> Err[AppError]:
    """Missing entity; the machine code is ``{ENTITY}_NOT_FOUND``."""
    msg = f"{entity} not found"
    if id:
        msg += f": {id}"
    return _err(
        ErrorCode.E4010_NOT_FOUND,
        msg,
        origin=origin,
        error_code=f"{entity.upper()}_NOT_FOUND",
        entity=entity,
        entity_id=str(id) if id else None,
    )


def duplicate_key(
    entity: str,
    field: str,
    value: str,
    origin: str = "",
    error_code: str | None = None,
) -> Err[AppError]:
    return _err(
        ErrorCode.E4011_DUPLICATE_KEY,
        f"{entity} with {field}='{value}' already exists",
        origin=origin,
        error_code=error_code,
        entity=entity,
        field=field,
        value=value,
    )


def circular_dependency(
    entity: str, id: str | UUID, prerequisite_id: str | UUID, origin: str = ""
) -> Err[AppError]:
    return _err(
        ErrorCode.E4014_CIRCULAR_DEPENDENCY,
        f"Adding this prerequisite would create a circular dependency between {entity.lower()}s",
        origin=origin,
        entity=entity,
        entity_id=str(id),
        prerequisite_id=str(prerequisite_id),
    )


def db_connection_failed(reason: str = "", origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E4001_CONNECTION_FAILED,
        _with_reason("Database connection failed", reason),
        origin=origin,
    )


def transaction_failed(reason: str = "", origin: str = "") -> Err[AppError]:
    return _err(
        ErrorCode.E4003_TRANSACTION_FAILED,
        _with_reason("Database transaction failed", reason),
        origin=origin,
    )


# =============================================================================
# Business rules (E5xxx)
# =============================================================================

def operation_not_allowed(
    operation: str, reason: str = "", origin: str = "", error_code: str | None = None
) -> Err[AppError]:
    return _err(
        ErrorCode.E5001_OPERATION_NOT_ALLOWED,
        _with_reason(f"Operation '{operation}' not allowed", reason),
        origin=origin,
        error_code=error_code,
        operation=operation,
    )


def rate_limited(
    resource: str, retry_after: float | None = None, origin: str = ""
) -> Err[AppError]:
    """Local rate limit exhausted (answered with 429 and a retry hint)."""
    return _err(
        ErrorCode.E5012_RATE_LIMIT_EXCEEDED,
        f"Rate limit exceeded for '{resource}'",
        origin=origin,
        resource=resource,
        retry_after=retry_after,
    )


# =============================================================================
# Internal (E9xxx)
# =============================================================================

def internal_error(
    message: str,
    *,
    origin: str = "",
    cause: Exception | None = None,
    **metadata,
) -> Err[AppError]:
    return _err(ErrorCode.E9001_UNEXPECTED_ERROR, message, origin=origin, cause=cause, **metadata)
