from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from productscribe.apps.api.deps import get_components, require_access, require_claims
from productscribe.apps.api.errors import api_error
from productscribe.core.errors import (
    IntegrationUnavailableError,
    LLMAuthError,
    LLMError,
    LLMRateLimitError,
    ProviderConfigError,
)
from productscribe.domain.accounts import QuotaStatus
from productscribe.services.authenticator import AuthResult
from productscribe.services.prompts import (
    BRAND_TONES,
    DESCRIPTION_LENGTHS,
    INPUT_MODES,
    LANGUAGES,
    build_description_prompt,
    build_messages,
    product_details,
)
from productscribe.services.telemetry import increment_counter

router = APIRouter(tags=["generate"])

logger = logging.getLogger(__name__)

MODEL_RETRY_AFTER_S = 60


class GenerateRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=128)
    brandTone: str = Field(max_length=32)
    descriptionLength: str = Field(default="medium", max_length=32)
    language: str = Field(default="english", max_length=32)
    inputMode: str = Field(default="url", max_length=16)
    productUrl: str | None = Field(default=None, max_length=2048)
    productInfo: dict[str, Any] | None = None
    targetAudience: str | None = Field(default=None, max_length=200)
    keyFeatures: str | None = Field(default=None, max_length=1000)


class UsageResponse(BaseModel):
    currentUsage: int
    maxUsage: int
    subscriptionType: str


class GenerateResponse(BaseModel):
    description: str
    success: bool
    usage: UsageResponse


def _validate(payload: GenerateRequest) -> None:
    # Closed vocabularies are checked before any quota is reserved.
    if payload.brandTone not in BRAND_TONES:
        raise api_error(400, "INVALID_INPUT", "Invalid brand tone")
    if payload.descriptionLength not in DESCRIPTION_LENGTHS:
        raise api_error(400, "INVALID_INPUT", "Invalid description length")
    if payload.language not in LANGUAGES:
        raise api_error(400, "INVALID_INPUT", "Unsupported language")
    if payload.inputMode not in INPUT_MODES:
        raise api_error(400, "INVALID_INPUT", "Invalid input mode")
    if payload.inputMode == "url":
        url = (payload.productUrl or "").strip()
        if not url.startswith(("http://", "https://")):
            raise api_error(400, "INVALID_INPUT", "A valid product URL is required")
    elif not payload.productInfo or not payload.productInfo.get("name"):
        raise api_error(400, "INVALID_INPUT", "Product information is required")


def _usage(quota: QuotaStatus) -> UsageResponse:
    return UsageResponse(**quota.as_usage())


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    payload: GenerateRequest,
    request: Request,
    auth: AuthResult = Depends(require_access("generate")),
) -> GenerateResponse:
    claims = require_claims(auth)
    _validate(payload)
    components = get_components(request)
    users = components.users

    # Reserve one description first; a failed generation hands it back.
    quota = await users.consume_usage(claims.user_id)
    if not quota.allowed:
        raise api_error(403, quota.code, "Usage limit reached for the current period", usage=quota.as_usage())

    details = product_details(payload.inputMode, payload.productUrl, payload.productInfo)
    prompt = build_description_prompt(
        details,
        brand_tone=payload.brandTone,
        description_length=payload.descriptionLength,
        language=payload.language,
        target_audience=payload.targetAudience,
        key_features=payload.keyFeatures,
    )
    try:
        description = await components.description_model.complete(build_messages(prompt))
    except LLMRateLimitError as exc:
        await users.release_usage(claims.user_id, quota.kind)
        raise api_error(
            429,
            "MODEL_RATE_LIMITED",
            "Rate limit exceeded. Please try again in a moment.",
            headers={"Retry-After": str(MODEL_RETRY_AFTER_S)},
            retryAfter=MODEL_RETRY_AFTER_S,
        ) from exc
    except (LLMAuthError, ProviderConfigError) as exc:
        await users.release_usage(claims.user_id, quota.kind)
        logger.error("description_model_misconfigured error=%s", type(exc).__name__)
        raise api_error(500, "MODEL_CONFIG_ERROR", "API configuration error. Please contact support.") from exc
    except (LLMError, IntegrationUnavailableError) as exc:
        await users.release_usage(claims.user_id, quota.kind)
        logger.warning("description_generation_failed error=%s", type(exc).__name__)
        raise api_error(503, "GENERATION_FAILED", "Failed to generate description. Please try again.") from exc

    increment_counter("descriptions_generated_total")
    logger.info(
        "description_generated user_id=%s plan=%s usage=%s/%s",
        claims.user_id,
        quota.plan_type,
        quota.current_usage,
        quota.max_usage,
    )
    return GenerateResponse(description=description, success=True, usage=_usage(quota))
