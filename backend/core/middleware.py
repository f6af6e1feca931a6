"""Request middleware: correlation IDs, request logging, slow-request
warnings and per-client rate limiting."""
import time

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from core.config import settings
from core.errors import rate_limited
from core.errors.handlers import result_to_response
from core.logging import (
    generate_correlation_id,
    bind_context,
    clear_context,
    api_logger,
)

log = api_logger()

# In-memory per-client limits; each worker process counts on its own
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    enabled=settings.RATE_LIMIT_ENABLED,
)

auth_rate_limit = limiter.limit(settings.RATE_LIMIT_AUTH)  # Login and registration


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render a slowapi rejection in the error envelope.

    Synchronous because ``SlowAPIMiddleware`` calls it directly.
    """
    window = exc.limit.limit.get_expiry()
    client = get_remote_address(request)
    log.warning("http_rate_limited", client_ip=client, limit=str(exc.limit.limit))
    error = rate_limited("http", retry_after=window, origin="middleware.rate_limit").error
    return result_to_response(error)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID for the request and logs start/finish with timing."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or generate_correlation_id()

        clear_context()
        bind_context(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )

        start = time.perf_counter()
        log.info(
            "request_started",
            query=str(request.query_params) if request.query_params else None,
            user_agent=request.headers.get("User-Agent", "")[:100],
        )

        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000
            response.headers["X-Correlation-ID"] = correlation_id

            status = response.status_code
            log_method = log.info if status < 400 else (log.warning if status < 500 else log.error)
            log_method("request_completed", status=status, duration_ms=round(duration_ms, 2))
            return response

        except Exception as exc:
            log.exception(
                "request_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        finally:
            clear_context()


class SlowRequestMiddleware(BaseHTTPMiddleware):
    """Warns about requests slower than ``slow_threshold_ms``."""

    def __init__(self, app, slow_threshold_ms: float = 1000):
        super().__init__(app)
        self.slow_threshold_ms = slow_threshold_ms

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        if duration_ms > self.slow_threshold_ms:
            log.warning(
                "slow_request",
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.slow_threshold_ms,
            )
        return response
