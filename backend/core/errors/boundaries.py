"""Error boundary mappers.

Third-party exceptions (SQLAlchemy, python-jose) are converted into
AppErrors where they cross into service code, so nothing above the
boundary has to know about driver-specific exception types.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from functools import wraps
from typing import Awaitable, Callable, Generic, TypeVar

from jose import ExpiredSignatureError, JWTError
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from .types import AppError, ErrorCode, ErrorContext, Err, Ok, Result
from .builders import (
    db_connection_failed,
    duplicate_key,
    internal_error,
    timeout_error,
    token_expired,
    token_invalid,
    transaction_failed,
)

T = TypeVar("T")


class ErrorMapper(ABC, Generic[T]):
    """Base for boundary mappers."""

    origin: str

    @abstractmethod
    def map_exception(self, exc: Exception) -> AppError:
        """Translate a third-party exception."""

    def map_result(self, result: Result[T, AppError]) -> Result[T, AppError]:
        match result:
            case Ok(_):
                return result
            case Err(e):
                if e.context.origin:
                    return result
                return Err(e.with_context(origin=self.origin))


class DatabaseErrorMapper(ErrorMapper[T]):
    """Maps SQLAlchemy exceptions onto E4xxx errors."""

    def __init__(self, origin: str = "database"):
        self.origin = origin

    def map_exception(self, exc: Exception) -> AppError:
        if isinstance(exc, IntegrityError):
            return self._map_integrity_error(exc)
        if isinstance(exc, OperationalError):
            return self._map_operational_error(exc)
        if isinstance(exc, SQLAlchemyError):
            return transaction_failed(str(exc), origin=self.origin).error.chain(exc)
        return internal_error(
            f"Database error: {exc}",
            origin=self.origin,
            cause=exc,
        ).error

    def _map_integrity_error(self, exc: IntegrityError) -> AppError:
        message = str(exc.orig) if exc.orig else str(exc)
        lowered = message.lower()

        if "duplicate key" in lowered or "unique constraint" in lowered:
            return duplicate_key(
                entity="record",
                field="unknown",
                value="unknown",
                origin=self.origin,
            ).error.chain(exc)

        if "foreign key" in lowered:
            return AppError(
                code=ErrorCode.E4012_FOREIGN_KEY_VIOLATION,
                message="Referenced record does not exist",
                context=ErrorContext(origin=self.origin),
                cause=exc,
            )

        return AppError(
            code=ErrorCode.E4013_CHECK_CONSTRAINT,
            message=f"Constraint violation: {message}",
            context=ErrorContext(origin=self.origin),
            cause=exc,
        )

    def _map_operational_error(self, exc: OperationalError) -> AppError:
        message = str(exc.orig) if exc.orig else str(exc)
        lowered = message.lower()

        if "timeout" in lowered:
            return timeout_error("database query", 30.0, origin=self.origin).error
        if "connect" in lowered:
            return db_connection_failed(message, origin=self.origin).error
        return transaction_failed(message, origin=self.origin).error


class AuthErrorMapper(ErrorMapper[T]):
    """Maps python-jose exceptions onto E3xxx errors."""

    def __init__(self, origin: str = "auth"):
        self.origin = origin

    def map_exception(self, exc: Exception) -> AppError:
        if isinstance(exc, ExpiredSignatureError):
            return token_expired(origin=self.origin).error
        if isinstance(exc, JWTError):
            return token_invalid(str(exc), origin=self.origin).error
        return internal_error(
            f"Authentication error: {exc}",
            origin=self.origin,
            cause=exc,
        ).error


def map_errors(mapper: ErrorMapper[T]):
    """Decorator turning exceptions escaping ``fn`` into ``Err`` values.

    Usage:
        @map_db_errors("engine.progress")
        async def update(session, ...) -> Result[Foo, AppError]:
            ...
    """
    def decorator(fn: Callable[..., Awaitable[Result[T, AppError]]]):
        @wraps(fn)
        async def wrapper(*args, **kwargs) -> Result[T, AppError]:
            try:
                result = await fn(*args, **kwargs)
            except SQLAlchemyError as e:
                return Err(mapper.map_exception(e))
            except JWTError as e:
                return Err(mapper.map_exception(e))
            return mapper.map_result(result)
        return wrapper
    return decorator


def map_db_errors(origin: str = "database"):
    return map_errors(DatabaseErrorMapper(origin))
