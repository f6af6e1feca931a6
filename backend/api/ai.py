"""AI API

Text generation and ventilator-configuration analysis through the
multi-provider dispatcher held on ``app.state``.
"""
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from core.errors import (
    external_service_error,
    external_service_unavailable,
    raise_error,
    rate_limited,
    validation_error,
)
from core.responses import envelope
from core.security import CurrentUser, get_current_user, require_admin
from engines.ai import AIDispatcher, AIResponse

router = APIRouter()

INPUT_ERRORS = {"INVALID_PROMPT", "INVALID_CONFIGURATION", "INVALID_VENTILATION_MODE"}
UNAVAILABLE_ERRORS = {"PROVIDER_NOT_CONFIGURED", "NO_PROVIDERS"}


def get_ai_dispatcher(request: Request) -> AIDispatcher:
    return request.app.state.ai_dispatcher


class GenerateRequest(BaseModel):
    prompt: str
    provider: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)


class VentilatorAnalysisRequest(BaseModel):
    user_config: dict[str, Any] = Field(alias="userConfig")
    optimal_config: dict[str, Any] = Field(alias="optimalConfig")
    ventilation_mode: str = Field(alias="ventilationMode")
    patient_data: dict[str, Any] | None = Field(default=None, alias="patientData")
    provider: str | None = None

    model_config = {"populate_by_name": True}


def _raise_for_failure(response: AIResponse, origin: str) -> None:
    """Map an unsuccessful dispatch onto the error envelope."""
    if response.success:
        return
    code = response.error_code
    if code in INPUT_ERRORS:
        raise_error(validation_error(response.error, error_code=code, origin=origin).error)
    if code == "RATE_LIMIT_EXCEEDED":
        raise_error(rate_limited(response.provider or "ai", response.retry_after, origin=origin).error)
    if code in UNAVAILABLE_ERRORS:
        raise_error(external_service_unavailable("ai", response.error, origin=origin).error)
    error = external_service_error("ai", response.error or "", origin=origin).error
    raise_error(error.with_metadata(providers=response.providers))


@router.post("/generate")
async def generate(
    payload: GenerateRequest,
    user: CurrentUser = Depends(get_current_user),
    dispatcher: AIDispatcher = Depends(get_ai_dispatcher),
):
    response = await dispatcher.generate_response(
        payload.prompt,
        payload.provider,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
    )
    _raise_for_failure(response, "api.ai.generate")
    return envelope(response.to_dict())


@router.post("/analyze-ventilator")
async def analyze_ventilator(
    payload: VentilatorAnalysisRequest,
    user: CurrentUser = Depends(get_current_user),
    dispatcher: AIDispatcher = Depends(get_ai_dispatcher),
):
    """Feedback on a learner's ventilator settings against the optimal ones."""
    response = await dispatcher.analyze_ventilator_configuration(
        payload.user_config,
        payload.optimal_config,
        payload.ventilation_mode,
        payload.patient_data,
        provider=payload.provider,
    )
    _raise_for_failure(response, "api.ai.analyze_ventilator")
    return envelope(response.to_dict())


@router.get("/stats")
async def provider_stats(
    user: CurrentUser = Depends(get_current_user),
    dispatcher: AIDispatcher = Depends(get_ai_dispatcher),
):
    return envelope(dispatcher.get_provider_stats())


@router.post("/rate-limit/reset")
async def reset_rate_limit(
    provider: str | None = Query(None),
    user: CurrentUser = Depends(require_admin),
    dispatcher: AIDispatcher = Depends(get_ai_dispatcher),
):
    dispatcher.reset_rate_limit(provider)
    return envelope({"provider": provider}, "Rate limit reset")


@router.get("/history")
async def request_history(
    limit: int = Query(50, ge=1, le=1000),
    user: CurrentUser = Depends(require_admin),
    dispatcher: AIDispatcher = Depends(get_ai_dispatcher),
):
    return envelope(dispatcher.get_request_history(limit))
