"""AI Dispatcher

Routes prompts to the configured provider and falls back along a chain
when it fails or is rate limited. Provider failures are reported in the
returned ``AIResponse``; they are never raised.
"""
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from core.errors import AppError, Err, Ok, Result, external_service_error, rate_limited
from core.logging import ai_logger
from core.resilience import CombinedPolicy, RetryConfig
from engines.ai.prompts import build_ventilator_analysis_prompt
from engines.ai.providers import AIProvider, build_providers
from engines.ai.rate_limit import RateLimitRule, SlidingWindowRateLimiter

log = ai_logger()

VENTILATION_MODES = ("volume", "pressure")


@dataclass(slots=True)
class AIResponse:
    success: bool
    content: str | None = None
    provider: str | None = None
    fallback_used: bool = False
    original_provider: str | None = None
    response_time_ms: int | None = None
    error: str | None = None
    error_code: str | None = None
    retry_after: float | None = None
    providers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(slots=True)
class ProviderStats:
    requests: int = 0
    errors: int = 0
    total_response_time_ms: int = 0
    last_request: datetime | None = None

    @property
    def average_response_time_ms(self) -> float:
        successes = self.requests - self.errors
        return self.total_response_time_ms / successes if successes > 0 else 0.0


@dataclass(slots=True)
class HistoryEntry:
    timestamp: datetime
    provider: str
    success: bool
    response_time_ms: int
    prompt_chars: int
    error: str | None = None


class AIDispatcher:
    """Explicitly constructed dispatcher; one instance lives on ``app.state``."""

    def __init__(
        self,
        providers: dict[str, AIProvider],
        *,
        default_provider: str = "gemini",
        fallback_chain: list[str] | None = None,
        rate_limits: dict[str, RateLimitRule] | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        history_limit: int = 1000,
        clock=time.monotonic,
    ):
        self.providers = dict(providers)
        self.fallback_chain = list(fallback_chain or ["gemini", "openai", "claude"])
        self.current_provider = default_provider
        if self.current_provider not in self.providers and self.providers:
            self.current_provider = next(
                (p for p in self.fallback_chain if p in self.providers),
                next(iter(self.providers)),
            )
        self.rate_limiter = SlidingWindowRateLimiter(rate_limits or {})
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._policy = CombinedPolicy[str](
            timeout_seconds,
            RetryConfig(max_attempts=max(1, max_retries)),
            operation_name="ai.generate",
        )
        self._clock = clock
        self._stats: dict[str, ProviderStats] = {name: ProviderStats() for name in self.providers}
        self._history: deque[HistoryEntry] = deque(maxlen=history_limit)

    @classmethod
    def from_settings(cls, settings) -> "AIDispatcher":
        window = settings.AI_RATE_WINDOW_SECONDS
        return cls(
            build_providers(settings),
            default_provider=settings.AI_DEFAULT_PROVIDER,
            fallback_chain=settings.AI_FALLBACK_CHAIN,
            rate_limits={
                "gemini": RateLimitRule(settings.GEMINI_RATE_LIMIT, window),
                "openai": RateLimitRule(settings.OPENAI_RATE_LIMIT, window),
                "claude": RateLimitRule(settings.CLAUDE_RATE_LIMIT, window),
            },
            timeout_seconds=settings.AI_TIMEOUT_SECONDS,
            max_retries=settings.AI_MAX_RETRIES,
            temperature=settings.AI_TEMPERATURE,
            max_tokens=settings.AI_MAX_TOKENS,
            history_limit=settings.AI_HISTORY_LIMIT,
        )

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def available_providers(self) -> list[str]:
        return list(self.providers)

    def switch_provider(self, name: str) -> bool:
        if name not in self.providers:
            log.warning("ai_switch_rejected", provider=name, available=self.available_providers())
            return False
        log.info("ai_provider_switched", previous=self.current_provider, provider=name)
        self.current_provider = name
        return True

    def reset_rate_limit(self, provider: str | None = None) -> None:
        self.rate_limiter.reset(provider)
        log.info("ai_rate_limit_reset", provider=provider or "all")

    def get_provider_stats(self) -> dict:
        now = self._clock()
        return {
            "current_provider": self.current_provider,
            "available_providers": self.available_providers(),
            "providers": {
                name: {
                    "requests": stats.requests,
                    "errors": stats.errors,
                    "average_response_time_ms": round(stats.average_response_time_ms, 1),
                    "last_request": stats.last_request,
                    "rate_limit": asdict(self.rate_limiter.check(name, now)),
                }
                for name, stats in self._stats.items()
            },
        }

    def get_request_history(self, limit: int = 50) -> list[dict]:
        entries = list(self._history)[-limit:] if limit > 0 else []
        return [asdict(e) for e in reversed(entries)]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _record(self, provider: str, success: bool, elapsed_ms: int, prompt: str, error: str | None = None) -> None:
        stats = self._stats.setdefault(provider, ProviderStats())
        stats.requests += 1
        stats.last_request = datetime.now(timezone.utc)
        if success:
            stats.total_response_time_ms += elapsed_ms
        else:
            stats.errors += 1
        self._history.append(HistoryEntry(
            timestamp=stats.last_request,
            provider=provider,
            success=success,
            response_time_ms=elapsed_ms,
            prompt_chars=len(prompt),
            error=error,
        ))

    async def _call(self, name: str, prompt: str, temperature: float, max_tokens: int) -> Result[str, AppError]:
        provider = self.providers[name]

        async def attempt() -> Result[str, AppError]:
            # Every network call counts against the window, retries included
            now = self._clock()
            if not self.rate_limiter.check(name, now).allowed:
                return rate_limited(name, origin="engine.ai")
            self.rate_limiter.record(name, now)
            try:
                return Ok(await provider.generate(prompt, temperature=temperature, max_tokens=max_tokens))
            except Exception as e:
                return external_service_error(name, str(e), origin="engine.ai", cause=e)

        async def on_retry(attempt_no: int, error: AppError, delay: float) -> None:
            log.warning("ai_provider_retry", provider=name, attempt=attempt_no,
                        delay=round(delay, 2), error=error.message)

        started = time.perf_counter()
        outcome = await self._policy.execute(attempt, on_retry)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        match outcome.result:
            case Ok(_):
                self._record(name, True, elapsed_ms, prompt)
            case Err(error):
                self._record(name, False, elapsed_ms, prompt, error.message)
                log.error("ai_provider_failed", provider=name, attempts=outcome.attempts, error=error.message)
        return outcome.result

    async def generate_response(
        self,
        prompt: str,
        provider: str | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AIResponse:
        if not isinstance(prompt, str) or not prompt.strip():
            return AIResponse(success=False, error="Prompt must be a non-empty string", error_code="INVALID_PROMPT")

        primary = provider or self.current_provider
        if primary not in self.providers:
            if provider is not None:
                return AIResponse(
                    success=False,
                    error=f"Provider '{provider}' is not configured",
                    error_code="PROVIDER_NOT_CONFIGURED",
                    providers=[provider],
                )
            if not self.providers:
                return AIResponse(
                    success=False,
                    error="No AI providers are configured",
                    error_code="NO_PROVIDERS",
                    fallback_used=True,
                )

        temperature = self.temperature if temperature is None else temperature
        max_tokens = self.max_tokens if max_tokens is None else max_tokens

        status = self.rate_limiter.check(primary, self._clock())
        if not status.allowed:
            log.warning("ai_rate_limited", provider=primary, retry_after=round(status.retry_after, 2))
            return AIResponse(
                success=False,
                provider=primary,
                error=f"Rate limit exceeded for {primary}",
                error_code="RATE_LIMIT_EXCEEDED",
                retry_after=round(status.retry_after, 3),
                providers=[primary],
            )

        attempted: list[str] = []
        started = time.perf_counter()
        candidates = [primary] + [p for p in self.fallback_chain if p != primary]
        last_error: str | None = None

        for name in candidates:
            if name not in self.providers:
                continue
            if name != primary and not self.rate_limiter.check(name, self._clock()).allowed:
                log.info("ai_fallback_skipped_rate_limited", provider=name)
                continue

            attempted.append(name)
            result = await self._call(name, prompt, temperature, max_tokens)
            if result.is_ok():
                fallback = name != primary
                if fallback:
                    log.info("ai_fallback_used", original_provider=primary, provider=name)
                return AIResponse(
                    success=True,
                    content=result.unwrap(),
                    provider=name,
                    fallback_used=fallback,
                    original_provider=primary if fallback else None,
                    response_time_ms=int((time.perf_counter() - started) * 1000),
                )
            last_error = result.unwrap_err().message

        log.error("ai_all_providers_failed", providers=attempted)
        return AIResponse(
            success=False,
            error=last_error or "All AI providers failed",
            error_code="ALL_PROVIDERS_FAILED",
            fallback_used=True,
            providers=attempted,
        )

    async def analyze_ventilator_configuration(
        self,
        user_config: dict,
        optimal_config: dict,
        ventilation_mode: str,
        patient_data: dict | None = None,
        provider: str | None = None,
    ) -> AIResponse:
        if not isinstance(user_config, dict) or not user_config:
            return AIResponse(success=False, error="User configuration is missing or empty",
                              error_code="INVALID_CONFIGURATION")
        if not isinstance(optimal_config, dict) or not optimal_config:
            return AIResponse(success=False, error="Optimal configuration must be a non-empty object",
                              error_code="INVALID_CONFIGURATION")
        if ventilation_mode not in VENTILATION_MODES:
            return AIResponse(success=False, error="Ventilation mode must be 'volume' or 'pressure'",
                              error_code="INVALID_VENTILATION_MODE")

        prompt = build_ventilator_analysis_prompt(user_config, optimal_config, ventilation_mode, patient_data)
        return await self.generate_response(prompt, provider)
