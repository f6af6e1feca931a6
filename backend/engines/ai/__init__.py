"""Multi-provider AI text generation with rate limiting and fallback."""
from engines.ai.dispatcher import AIDispatcher, AIResponse
from engines.ai.prompts import build_ventilator_analysis_prompt, format_config, format_patient_data
from engines.ai.providers import AIProvider, build_providers
from engines.ai.rate_limit import RateLimitRule, RateLimitStatus, SlidingWindowRateLimiter

__all__ = [
    "AIDispatcher",
    "AIProvider",
    "AIResponse",
    "RateLimitRule",
    "RateLimitStatus",
    "SlidingWindowRateLimiter",
    "build_providers",
    "build_ventilator_analysis_prompt",
    "format_config",
    "format_patient_data",
]
