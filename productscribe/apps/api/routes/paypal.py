from __future__ import annotations

import logging
import re
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from productscribe.apps.api.deps import client_ip, get_components, require_access, require_claims
from productscribe.apps.api.errors import api_error
from productscribe.core.errors import (
    EmailValidationError,
    IntegrationUnavailableError,
    PaymentConfigError,
    PaymentProviderError,
)
from productscribe.core.primitives import epoch_ms, iso_from_ms
from productscribe.domain.accounts import FREE_PLAN_MAX_USAGE, PLAN_FREE, normalize_subscriber
from productscribe.providers.payments.base import configured_plan_ids, parse_plan_name
from productscribe.services.authenticator import AuthResult
from productscribe.services.bootstrap import Components
from productscribe.services.identity import VerifiedClaims
from productscribe.services.policy import payment_rule
from productscribe.services.rate_limiter import (
    REASON_FAILSAFE_DENIED,
    REASON_FRAUD_LOCKOUT,
    REASON_SYSTEM_ERROR,
    RateLimitDecision,
)
from productscribe.services.security_monitor import SEVERITY_CRITICAL, SEVERITY_HIGH, SecurityEvent

router = APIRouter(tags=["payments"])

logger = logging.getLogger(__name__)

_ORDER_ID_RE = re.compile(r"^[A-Za-z0-9-]{6,64}$")
_PLACEHOLDER_DOMAINS = ("@example.com", "@unknown.com")
UNAVAILABLE_MESSAGE = "PayPal service unavailable"


class PayPalRequest(BaseModel):
    action: Literal["create_subscription", "capture_order", "get_subscription_status", "get_plan_ids"]
    planName: str | None = Field(default=None, max_length=64)
    email: str | None = Field(default=None, max_length=320)
    orderID: str | None = Field(default=None, max_length=64)


async def _record_payment_denial(
    components: Components, decision: RateLimitDecision, ip: str, user_id: str
) -> None:
    # The payment window runs after authentication, so this is the denial's only event.
    if decision.reason in (REASON_FAILSAFE_DENIED, REASON_SYSTEM_ERROR):
        event_type, severity = "system_error_rate_limiter", SEVERITY_CRITICAL
    elif decision.reason == REASON_FRAUD_LOCKOUT:
        event_type, severity = "payment_fraud_lockout", SEVERITY_CRITICAL
    else:
        event_type, severity = "rate_limit_exceeded", SEVERITY_HIGH
    await components.monitor.record_security_event(
        SecurityEvent(
            event_type=event_type,
            severity=severity,
            client_ip=ip,
            user_id=user_id,
            endpoint="paypal",
            details={"reason": "payment_window", "failsafeMode": decision.failsafe_mode},
        )
    )


async def _enforce_payment_window(request: Request, components: Components, claims: VerifiedClaims) -> None:
    # Per (ip, user) window shared by every payment action, with fraud lockout in front of it.
    ip = client_ip(request)
    decision = await components.rate_limiter.check_rate_limit(
        f"{ip}:{claims.user_id}",
        payment_rule(components.settings),
        client_ip=ip,
        user_id=claims.user_id,
        user_agent=request.headers.get("user-agent") or "unknown",
        endpoint="paypal",
    )
    if decision.allowed:
        return
    await _record_payment_denial(components, decision, ip, claims.user_id)
    headers = {"Retry-After": str(decision.retry_after_s)} if decision.retry_after_s is not None else None
    if decision.reason in (REASON_FAILSAFE_DENIED, REASON_SYSTEM_ERROR):
        raise api_error(503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable", headers=headers)
    if decision.reason == REASON_FRAUD_LOCKOUT:
        raise api_error(
            429,
            "FRAUD_LOCKOUT",
            "Too many payment attempts. Access temporarily locked.",
            headers=headers,
            retryAfter=decision.retry_after_s,
        )
    raise api_error(
        429,
        "PAYMENT_RATE_LIMITED",
        "Too many payment attempts. Please try again later.",
        headers=headers,
        retryAfter=decision.retry_after_s,
    )


async def _payment_email(components: Components, claims: VerifiedClaims, email: str | None) -> str:
    candidate = (email or claims.email or "").strip().lower()
    if candidate.endswith(_PLACEHOLDER_DOMAINS):
        return candidate
    try:
        return await components.email_policy.require(candidate)
    except EmailValidationError as exc:
        raise api_error(400, exc.kind, f"Email validation failed: {exc}") from exc


async def _create_subscription(
    payload: PayPalRequest, components: Components, claims: VerifiedClaims
) -> dict[str, Any]:
    plan = parse_plan_name(payload.planName or "")
    if plan is None:
        raise api_error(400, "INVALID_PLAN", "Invalid plan name")
    tier, cycle = plan
    plan_id = configured_plan_ids(components.settings).get(f"{tier}_{cycle}")
    if not plan_id:
        logger.error("paypal_plan_not_configured plan=%s_%s", tier, cycle)
        raise api_error(500, "PLAN_NOT_CONFIGURED", UNAVAILABLE_MESSAGE)
    email = await _payment_email(components, claims, payload.email)
    site_url = components.settings.site_url.rstrip("/")
    created = await components.payment_provider.create_subscription(
        plan_id,
        email,
        return_url=f"{site_url}/success?plan={tier}&cycle={cycle}",
        cancel_url=f"{site_url}/cancel",
    )
    logger.info("paypal_subscription_created user_id=%s plan=%s_%s", claims.user_id, tier, cycle)
    return {
        "subscription_id": created.subscription_id,
        "approval_url": created.approval_url,
        "status": created.status,
        "planType": tier,
        "billingCycle": cycle,
    }


async def _capture_order(payload: PayPalRequest, components: Components) -> dict[str, Any]:
    if not payload.orderID or not _ORDER_ID_RE.match(payload.orderID):
        raise api_error(400, "INVALID_INPUT", "Valid order ID is required")
    capture = await components.payment_provider.capture_order(payload.orderID)
    return {"success": True, "orderID": payload.orderID, "status": capture.get("status")}


async def _subscription_status(
    payload: PayPalRequest, components: Components, claims: VerifiedClaims
) -> dict[str, Any]:
    # Status comes from our subscriber record; the webhook keeps it in step with the processor.
    email = (payload.email or claims.email or "").strip().lower()
    if not email:
        raise api_error(400, "EMAIL_REQUIRED", "Email is required")
    found = await components.users.find_subscriber_by_email(email)
    if found is None:
        return {"status": "inactive", "plan": PLAN_FREE, "usage_limit": FREE_PLAN_MAX_USAGE}
    _, record = found
    subscriber = normalize_subscriber(record)
    return {
        "status": str(subscriber.get("subscriptionStatus") or "inactive").lower(),
        "plan": subscriber.get("planType"),
        "usage_limit": subscriber.get("maxUsage"),
        "billingCycle": subscriber.get("billingCycle"),
        "nextBillingDate": subscriber.get("nextBillingDate"),
    }


def _plan_ids(components: Components) -> dict[str, Any]:
    plans = configured_plan_ids(components.settings)
    missing = sorted(name for name, plan_id in plans.items() if not plan_id)
    return {"plans": {name: plan_id for name, plan_id in plans.items() if plan_id}, "missing": missing}


@router.post("/paypal")
async def paypal(
    payload: PayPalRequest,
    request: Request,
    response: Response,
    auth: AuthResult = Depends(require_access("paypal")),
) -> dict[str, Any]:
    claims = require_claims(auth)
    components = get_components(request)
    await _enforce_payment_window(request, components, claims)
    response.headers["Cache-Control"] = "private, no-store"
    try:
        if payload.action == "create_subscription":
            body = await _create_subscription(payload, components, claims)
        elif payload.action == "capture_order":
            body = await _capture_order(payload, components)
        elif payload.action == "get_subscription_status":
            body = await _subscription_status(payload, components, claims)
        else:
            body = _plan_ids(components)
    except PaymentConfigError as exc:
        logger.error("paypal_not_configured error=%s", exc)
        raise api_error(500, "PAYMENT_CONFIG_ERROR", UNAVAILABLE_MESSAGE) from exc
    except IntegrationUnavailableError as exc:
        raise api_error(503, "PAYMENT_UNAVAILABLE", UNAVAILABLE_MESSAGE) from exc
    except PaymentProviderError as exc:
        logger.warning("paypal_request_rejected status=%s action=%s", exc.status_code, payload.action)
        if exc.status_code is not None and 400 <= exc.status_code < 500:
            raise api_error(400, "PAYMENT_REJECTED", "Payment request was rejected") from exc
        raise api_error(502, "PAYMENT_FAILED", "Payment processing failed") from exc
    body["timestamp"] = iso_from_ms(epoch_ms(components.time_provider))
    return body
