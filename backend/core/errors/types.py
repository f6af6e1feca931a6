"""Result types and the application error taxonomy.

Services return ``Result[T, AppError]`` instead of raising; the HTTP layer
turns an ``Err`` into an enveloped JSON error with a stable status and
machine-readable code.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Generic, NoReturn, TypeVar, Union, final
from uuid import uuid4


T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound="AppError")


class ErrorCode(Enum):
    """Hierarchical error code taxonomy.

    E1xxx: External services (AI providers)
    E2xxx: Validation
    E3xxx: Authentication (30xx) / Authorization (301x+)
    E4xxx: Database and resources
    E5xxx: Business rules
    E9xxx: Internal
    """
    # External (E1xxx)
    E1000_NETWORK_GENERIC = 1000
    E1002_TIMEOUT = 1002
    E1010_EXTERNAL_SERVICE_UNAVAILABLE = 1010
    E1011_EXTERNAL_SERVICE_ERROR = 1011

    # Validation (E2xxx)
    E2000_VALIDATION_GENERIC = 2000
    E2012_INVALID_DATE = 2012
    E2030_INVALID_OVERRIDE_DATA = 2030
    E2031_SELF_PREREQUISITE = 2031

    # Authentication/Authorization (E3xxx)
    E3001_INVALID_CREDENTIALS = 3001
    E3002_TOKEN_EXPIRED = 3002
    E3003_TOKEN_INVALID = 3003
    E3004_TOKEN_MISSING = 3004
    E3010_INSUFFICIENT_PERMISSIONS = 3010
    E3011_RESOURCE_FORBIDDEN = 3011
    E3020_ACCOUNT_DISABLED = 3020

    # Database (E4xxx)
    E4001_CONNECTION_FAILED = 4001
    E4003_TRANSACTION_FAILED = 4003
    E4010_NOT_FOUND = 4010
    E4011_DUPLICATE_KEY = 4011
    E4012_FOREIGN_KEY_VIOLATION = 4012
    E4013_CHECK_CONSTRAINT = 4013
    E4014_CIRCULAR_DEPENDENCY = 4014

    # Business rules (E5xxx)
    E5001_OPERATION_NOT_ALLOWED = 5001
    E5002_STATE_CONFLICT = 5002
    E5012_RATE_LIMIT_EXCEEDED = 5012

    # Internal (E9xxx)
    E9001_UNEXPECTED_ERROR = 9001

    @property
    def http_status(self) -> int:
        """Map error code to appropriate HTTP status."""
        code = self.value
        if 1000 <= code < 1100:
            return 502 if code in (1010, 1011) else 503
        if 2000 <= code < 2100:
            return 400
        if 3000 <= code < 3010:
            return 401
        if 3010 <= code < 3100:
            return 403
        if code == 4010:
            return 404
        if 4011 <= code < 4020:
            return 409
        if 4000 <= code < 4100:
            return 503
        if 5000 <= code < 5010:
            return 409
        if 5010 <= code < 5100:
            return 429
        return 500

    @property
    def category(self) -> str:
        code = self.value
        if 1000 <= code < 2000:
            return "external"
        if 2000 <= code < 3000:
            return "validation"
        if 3000 <= code < 3010:
            return "authentication"
        if 3010 <= code < 4000:
            return "authorization"
        if 4000 <= code < 5000:
            return "database"
        if 5000 <= code < 6000:
            return "business"
        return "internal"

    @property
    def default_error_code(self) -> str:
        """Stable machine-readable string code used when none is given."""
        specific = {
            ErrorCode.E1002_TIMEOUT: "EXTERNAL_SERVICE_TIMEOUT",
            ErrorCode.E3001_INVALID_CREDENTIALS: "INVALID_CREDENTIALS",
            ErrorCode.E3002_TOKEN_EXPIRED: "TOKEN_EXPIRED",
            ErrorCode.E3003_TOKEN_INVALID: "TOKEN_INVALID",
            ErrorCode.E4010_NOT_FOUND: "NOT_FOUND",
            ErrorCode.E4011_DUPLICATE_KEY: "DUPLICATE_ENTRY",
            ErrorCode.E4014_CIRCULAR_DEPENDENCY: "CIRCULAR_DEPENDENCY",
            ErrorCode.E2030_INVALID_OVERRIDE_DATA: "INVALID_OVERRIDE_DATA",
            ErrorCode.E5012_RATE_LIMIT_EXCEEDED: "RATE_LIMIT_EXCEEDED",
        }
        if self in specific:
            return specific[self]
        by_category = {
            "external": "EXTERNAL_SERVICE_ERROR",
            "validation": "VALIDATION_ERROR",
            "authentication": "UNAUTHORIZED",
            "authorization": "FORBIDDEN",
            "business": "CONFLICT",
        }
        return by_category.get(self.category, "INTERNAL_SERVER_ERROR")


@dataclass(frozen=True, slots=True)
class ErrorContext:
    """Immutable context for error tracing and debugging."""
    correlation_id: str = field(default_factory=lambda: str(uuid4())[:8])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    origin: str = ""
    user_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True, slots=True)
class AppError:
    """Application error with code, message, metadata and trace context.

    ``error_code`` is the string code clients switch on (``OVERRIDE_EXISTS``,
    ``DUPLICATE_ORDER``...); it falls back to the code's default.
    """
    code: ErrorCode
    message: str
    context: ErrorContext = field(default_factory=ErrorContext)
    metadata: dict = field(default_factory=dict)
    cause: Exception | None = None
    error_code: str | None = None

    @property
    def machine_code(self) -> str:
        return self.error_code or self.code.default_error_code

    def with_context(self, **kwargs) -> AppError:
        """Create new error with updated context."""
        new_ctx = ErrorContext(
            correlation_id=kwargs.get("correlation_id") or self.context.correlation_id,
            timestamp=self.context.timestamp,
            origin=kwargs.get("origin", self.context.origin),
            user_id=kwargs.get("user_id", self.context.user_id),
            request_id=kwargs.get("request_id", self.context.request_id),
        )
        return AppError(
            code=self.code,
            message=self.message,
            context=new_ctx,
            metadata={**self.metadata, **kwargs.get("metadata", {})},
            cause=self.cause,
            error_code=self.error_code,
        )

    def with_metadata(self, **kwargs) -> AppError:
        return AppError(
            code=self.code,
            message=self.message,
            context=self.context,
            metadata={**self.metadata, **kwargs},
            cause=self.cause,
            error_code=self.error_code,
        )

    def chain(self, cause: Exception) -> AppError:
        return AppError(
            code=self.code,
            message=self.message,
            context=self.context,
            metadata=self.metadata,
            cause=cause,
            error_code=self.error_code,
        )

    def to_dict(self) -> dict:
        """Serialize as the ``error`` block of the response envelope."""
        return {
            "code": self.machine_code,
            "code_num": self.code.value,
            "message": self.message,
            "category": self.code.category,
            "correlation_id": self.context.correlation_id,
            "details": self.metadata,
        }

    def __str__(self) -> str:
        return f"[{self.machine_code}] {self.message} (correlation_id={self.context.correlation_id})"


@final
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Success variant of Result."""
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U, AppError]:
        return Ok(f(self.value))


@final
@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failure variant of Result, wrapping an AppError."""
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ValueError(f"Called unwrap on Err: {self.error}")

    def unwrap_err(self) -> E:
        return self.error

    def map(self, f: Callable[[T], U]) -> Result[U, E]:
        return self  # type: ignore


Result = Union[Ok[T], Err[E]]
