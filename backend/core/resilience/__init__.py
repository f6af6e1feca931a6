"""Resilience policies for external calls (timeouts and bounded retries)."""
from .retry import (
    BackoffStrategy,
    CombinedPolicy,
    RetryConfig,
    RetryPolicy,
    RetryResult,
    TimeoutPolicy,
)

__all__ = [
    "BackoffStrategy",
    "CombinedPolicy",
    "RetryConfig",
    "RetryPolicy",
    "RetryResult",
    "TimeoutPolicy",
]
