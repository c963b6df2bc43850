from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field, ValidationError

from productscribe.apps.api.deps import client_ip, get_components, require_access, require_claims
from productscribe.apps.api.errors import api_error
from productscribe.core.errors import UserExistsError, UserLifecycleError
from productscribe.core.primitives import epoch_ms, iso_from_ms
from productscribe.services.authenticator import AuthResult
from productscribe.services.security_monitor import EVENT_WEBHOOK_ABUSE, SEVERITY_HIGH, SecurityEvent
from productscribe.services.users import UpgradeRequest

router = APIRouter(tags=["users"])

logger = logging.getLogger(__name__)


class UserStatusResponse(BaseModel):
    exists: bool
    collection: str
    status: str
    descriptionsRemaining: int


class TrialSignupRequest(BaseModel):
    ipAddress: str | None = Field(default=None, max_length=64)


class TrialSignupResponse(BaseModel):
    success: bool
    userId: str
    status: str
    descriptionsRemaining: int
    expiresAt: str


class UpgradeWebhookRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=128)
    email: EmailStr
    subscriptionId: str = Field(min_length=1, max_length=128)
    planType: Literal["starter", "professional", "enterprise"]
    billingCycle: Literal["monthly", "annual"] = "monthly"
    nextBillingDate: str | None = Field(default=None, max_length=64)


class UpgradeWebhookResponse(BaseModel):
    success: bool
    userId: str
    status: str
    idempotent: bool


@router.get("/check-user-status", response_model=UserStatusResponse)
async def check_user_status(
    request: Request,
    userId: str | None = Query(default=None, max_length=128),
    auth: AuthResult = Depends(require_access("check-user-status")),
) -> UserStatusResponse:
    # Callers may only read their own record; a foreign userId is refused by the access pipeline.
    claims = require_claims(auth)
    status = await get_components(request).users.get_user_status(userId or claims.user_id)
    if status is None:
        raise api_error(404, "USER_NOT_FOUND", "User not found", exists=False)
    return UserStatusResponse(**status)


@router.post("/create-trial-user", response_model=TrialSignupResponse)
async def create_trial_user(
    request: Request,
    payload: TrialSignupRequest | None = None,
    auth: AuthResult = Depends(require_access("create-trial-user")),
) -> TrialSignupResponse:
    claims = require_claims(auth)
    components = get_components(request)
    device_cookie = request.cookies.get(components.settings.trial_device_cookie_name)
    ip_address = (payload.ipAddress if payload else None) or client_ip(request)
    try:
        trial = await components.users.create_trial_user(
            claims.user_id,
            claims.email,
            ip_address=ip_address,
            email_verified=claims.email_verified,
            device_cookie_present=bool(device_cookie),
        )
    except UserExistsError as exc:
        raise api_error(409, "USER_EXISTS", str(exc)) from exc
    except UserLifecycleError as exc:
        raise api_error(403, "EMAIL_NOT_VERIFIED", str(exc)) from exc
    return TrialSignupResponse(
        success=True,
        userId=claims.user_id,
        status=trial["status"],
        descriptionsRemaining=trial["descriptionsRemaining"],
        expiresAt=iso_from_ms(int(trial["expiresAt"])),
    )


def _signature_valid(secret: str, body: bytes, signature: str | None) -> bool:
    # Hex HMAC-SHA256 over the raw body, optionally prefixed with "sha256=".
    if not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


@router.post("/upgrade-to-subscription", response_model=UpgradeWebhookResponse)
async def upgrade_to_subscription(
    request: Request,
    auth: AuthResult = Depends(require_access("upgrade-to-subscription")),
) -> UpgradeWebhookResponse:
    """Payment-processor webhook promoting a user to a paid plan.

    The caller is a server, not a browser: it carries no bearer token and proves itself
    with a shared-secret signature over the exact request bytes.
    """
    components = get_components(request)
    settings = components.settings
    if not settings.upgrade_webhook_secret:
        logger.error("upgrade_webhook_secret_not_configured")
        raise api_error(503, "WEBHOOK_NOT_CONFIGURED", "Service temporarily unavailable")

    raw = await request.body()
    signature = request.headers.get(settings.upgrade_webhook_signature_header)
    if not _signature_valid(settings.upgrade_webhook_secret, raw, signature):
        await components.monitor.record_security_event(
            SecurityEvent(
                event_type=EVENT_WEBHOOK_ABUSE,
                severity=SEVERITY_HIGH,
                client_ip=client_ip(request),
                endpoint="upgrade-to-subscription",
                details={"operationId": auth.operation_id, "reason": "invalid_signature"},
            )
        )
        raise api_error(401, "INVALID_SIGNATURE", "Invalid webhook signature")

    try:
        payload = UpgradeWebhookRequest.model_validate_json(raw)
    except ValidationError as exc:
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        raise api_error(400, "INVALID_INPUT", "Invalid request parameters", fields=fields) from exc

    try:
        result = await components.users.upgrade_to_subscription(
            UpgradeRequest(
                user_id=payload.userId,
                email=payload.email,
                subscription_id=payload.subscriptionId,
                plan_type=payload.planType,
                billing_cycle=payload.billingCycle,
                next_billing_date=payload.nextBillingDate,
            )
        )
    except UserLifecycleError as exc:
        raise api_error(400, "INVALID_INPUT", str(exc)) from exc
    logger.info(
        "upgrade_webhook_processed user_id=%s at_ms=%s idempotent=%s",
        payload.userId,
        epoch_ms(components.time_provider),
        result.idempotent,
    )
    return UpgradeWebhookResponse(
        success=True,
        userId=payload.userId,
        status=str(result.user.get("status") or payload.planType),
        idempotent=result.idempotent,
    )
