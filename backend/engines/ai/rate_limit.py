"""Per-provider sliding-window rate limiter.

State is process-local: each worker enforces its own window.
"""
import time
from collections import deque
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    max_requests: int
    window_seconds: float = 60.0


@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    allowed: bool
    remaining: int
    retry_after: float  # seconds until the oldest request leaves the window


class SlidingWindowRateLimiter:
    """Tracks request timestamps per provider inside a rolling window."""

    def __init__(self, rules: dict[str, RateLimitRule]):
        self.rules = dict(rules)
        self._requests: dict[str, deque[float]] = {name: deque() for name in self.rules}

    def _prune(self, provider: str, now: float) -> deque[float]:
        window = self._requests.setdefault(provider, deque())
        rule = self.rules.get(provider)
        if rule is not None:
            while window and window[0] <= now - rule.window_seconds:
                window.popleft()
        return window

    def check(self, provider: str, now: float | None = None) -> RateLimitStatus:
        rule = self.rules.get(provider)
        if rule is None:
            return RateLimitStatus(allowed=True, remaining=0, retry_after=0.0)
        now = time.monotonic() if now is None else now
        window = self._prune(provider, now)
        if len(window) < rule.max_requests:
            return RateLimitStatus(True, rule.max_requests - len(window), 0.0)
        if not window:
            return RateLimitStatus(False, 0, rule.window_seconds)
        retry_after = max(0.0, window[0] + rule.window_seconds - now)
        return RateLimitStatus(False, 0, retry_after)

    def record(self, provider: str, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        self._prune(provider, now).append(now)

    def reset(self, provider: str | None = None) -> None:
        if provider is None:
            for window in self._requests.values():
                window.clear()
        else:
            self._requests.get(provider, deque()).clear()
