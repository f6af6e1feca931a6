"""Retry and timeout policies for calls to external services.

The AI providers are the only remote dependency; each provider call runs
under a per-attempt timeout and a bounded retry with backoff.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Generic, TypeVar

from core.errors import (
    AppError,
    ErrorCode,
    Err,
    Ok,
    Result,
    timeout_error,
)

T = TypeVar("T")


class BackoffStrategy(Enum):
    CONSTANT = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    multiplier: float = 2.0
    retryable_codes: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({
            ErrorCode.E1000_NETWORK_GENERIC,
            ErrorCode.E1002_TIMEOUT,
            ErrorCode.E1010_EXTERNAL_SERVICE_UNAVAILABLE,
            ErrorCode.E1011_EXTERNAL_SERVICE_ERROR,
        })
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after ``attempt`` (1-indexed)."""
        if self.strategy is BackoffStrategy.CONSTANT:
            return min(self.base_delay_seconds, self.max_delay_seconds)
        base = min(
            self.base_delay_seconds * (self.multiplier ** (attempt - 1)),
            self.max_delay_seconds,
        )
        if self.strategy is BackoffStrategy.EXPONENTIAL:
            return base
        jitter_range = base * self.jitter_factor
        return max(0.0, min(base + random.uniform(-jitter_range / 2, jitter_range / 2),
                            self.max_delay_seconds))


@dataclass
class RetryResult(Generic[T]):
    """Final result plus how many attempts it took."""
    result: Result[T, AppError]
    attempts: int
    errors: list[AppError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result.is_ok()


class RetryPolicy(Generic[T]):
    """Retry an async Result-returning call on transient error codes.

    Usage:
        policy = RetryPolicy(RetryConfig(max_attempts=3))
        outcome = await policy.execute(lambda: provider_call())
        if outcome.succeeded:
            ...
    """

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()

    def should_retry(self, error: AppError, attempt: int) -> bool:
        if attempt >= self.config.max_attempts:
            return False
        return error.code in self.config.retryable_codes

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
        on_retry: Callable[[int, AppError, float], Awaitable[None]] | None = None,
    ) -> RetryResult[T]:
        errors: list[AppError] = []
        attempts = max(1, self.config.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                result = await fn()
            except Exception as e:
                result = Err(AppError(
                    code=ErrorCode.E9001_UNEXPECTED_ERROR,
                    message=str(e),
                ).chain(e))

            match result:
                case Ok(_):
                    return RetryResult(result=result, attempts=attempt, errors=errors)
                case Err(error):
                    errors.append(error)
                    if not self.should_retry(error, attempt):
                        return RetryResult(result=result, attempts=attempt, errors=errors)
                    delay = self.config.delay_for(attempt)
                    if on_retry:
                        await on_retry(attempt, error, delay)
                    await asyncio.sleep(delay)

        # Unreachable: the last attempt always returns above
        return RetryResult(result=Err(errors[-1]), attempts=attempts, errors=errors)


class TimeoutPolicy(Generic[T]):
    """Bound a single async call; expiry becomes an E1002 timeout error."""

    def __init__(self, timeout_seconds: float, operation_name: str = "operation"):
        self.timeout_seconds = timeout_seconds
        self.operation_name = operation_name

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return timeout_error(
                self.operation_name,
                self.timeout_seconds,
                origin="timeout_policy",
            )


class CombinedPolicy(Generic[T]):
    """Timeout per attempt, retried under a RetryPolicy."""

    def __init__(
        self,
        timeout_seconds: float,
        retry_config: RetryConfig | None = None,
        operation_name: str = "operation",
    ):
        self.timeout = TimeoutPolicy[T](timeout_seconds, operation_name)
        self.retry = RetryPolicy[T](retry_config)

    async def execute(
        self,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
        on_retry: Callable[[int, AppError, float], Awaitable[None]] | None = None,
    ) -> RetryResult[T]:
        async def timed_fn() -> Result[T, AppError]:
            return await self.timeout.execute(fn)

        return await self.retry.execute(timed_fn, on_retry)
