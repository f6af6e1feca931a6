"""AI provider adapters.

Each adapter exposes ``generate(prompt, *, temperature, max_tokens) -> str``
and raises on failure; the dispatcher turns exceptions into Result errors.
"""
from typing import Protocol

import google.generativeai as genai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from core.logging import ai_logger

log = ai_logger()


class ProviderError(Exception):
    """The provider answered but produced nothing usable."""


class AIProvider(Protocol):
    name: str
    model: str

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        ...


class GeminiProvider:
    name = "gemini"

    __slots__ = ("model", "_client")

    def __init__(self, api_key: str, model: str):
        genai.configure(api_key=api_key)
        self.model = model
        self._client = genai.GenerativeModel(model_name=model)

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        response = await self._client.generate_content_async(
            prompt,
            generation_config=genai.GenerationConfig(
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        )
        text = (response.text or "").strip()
        if not text:
            raise ProviderError("Gemini returned an empty response")
        return text


class OpenAIProvider:
    name = "openai"

    __slots__ = ("model", "_client")

    def __init__(self, api_key: str, model: str):
        self.model = model
        self._client = AsyncOpenAI(api_key=api_key)

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise ProviderError("OpenAI returned an empty response")
        return text


class ClaudeProvider:
    name = "claude"

    __slots__ = ("model", "_client")

    def __init__(self, api_key: str, model: str):
        self.model = model
        self._client = AsyncAnthropic(api_key=api_key)

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        # Only text blocks carry the answer
        text = "".join(block.text for block in response.content if hasattr(block, "text")).strip()
        if not text:
            raise ProviderError("Claude returned an empty response")
        return text


def build_providers(settings) -> dict[str, AIProvider]:
    """Instantiate every provider that is enabled and has a key."""
    candidates = (
        ("gemini", settings.GEMINI_ENABLED, settings.GEMINI_API_KEY, settings.GEMINI_MODEL, GeminiProvider),
        ("openai", settings.OPENAI_ENABLED, settings.OPENAI_API_KEY, settings.OPENAI_MODEL, OpenAIProvider),
        ("claude", settings.CLAUDE_ENABLED, settings.ANTHROPIC_API_KEY, settings.CLAUDE_MODEL, ClaudeProvider),
    )
    providers: dict[str, AIProvider] = {}
    for name, enabled, api_key, model, cls in candidates:
        if not enabled or not api_key:
            log.info("ai_provider_skipped", provider=name, enabled=enabled, has_key=bool(api_key))
            continue
        providers[name] = cls(api_key=api_key, model=model)
        log.info("ai_provider_configured", provider=name, model=model)
    return providers
