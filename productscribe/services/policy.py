from __future__ import annotations

from dataclasses import dataclass
import hmac
import logging
from typing import Any, Mapping

from productscribe.core.config import Settings
from productscribe.domain.accounts import SUBSCRIBED_USERS_COLLECTION, QuotaStatus, TRIAL_USERS_COLLECTION, quota_for
from productscribe.persistence.documents import DocumentStore
from productscribe.services.rate_limiter import RateLimitRule


logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; "
        "connect-src 'self'; frame-ancestors 'none'; object-src 'none'; base-uri 'self'; form-action 'self'"
    ),
}

CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-CSRF-Token"


@dataclass(frozen=True)
class EndpointPolicy:
    # Declarative access requirements for one endpoint, evaluated in a fixed order.
    name: str
    allowed_methods: frozenset[str]
    require_auth: bool = True
    require_admin: bool = False
    require_subscription: bool = False
    require_csrf: bool = False
    allow_missing_origin: bool = False
    # Admin bodies name a target user, so only caller-scoped endpoints compare body userId.
    enforce_body_user_id: bool = True
    rate_limit: RateLimitRule | None = None


@dataclass(frozen=True)
class OriginDecision:
    allowed: bool
    origin: str | None


def parse_origins(raw: str) -> tuple[str, ...]:
    return tuple(origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip())


def validate_origin(origin: str | None, allowed: tuple[str, ...], *, allow_missing: bool) -> OriginDecision:
    # Exact match only; a rejected origin never falls back to a default allowed origin.
    if not origin:
        return OriginDecision(allowed=allow_missing, origin=None)
    candidate = origin.strip().rstrip("/")
    if candidate in allowed:
        return OriginDecision(allowed=True, origin=candidate)
    return OriginDecision(allowed=False, origin=None)


def cors_headers(origin: str | None, methods: frozenset[str]) -> dict[str, str]:
    # CORS headers exist only for a validated origin.
    if origin is None:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Methods": ", ".join(sorted(methods | {"OPTIONS"})),
        "Vary": "Origin",
    }


def security_headers() -> dict[str, str]:
    return dict(SECURITY_HEADERS)


def cookie_value(cookie_header: str | None, name: str) -> str | None:
    if not cookie_header:
        return None
    for part in cookie_header.split(";"):
        key, _, value = part.strip().partition("=")
        if key == name and value:
            return value
    return None


def check_csrf(header_token: str | None, cookie_token: str | None) -> str | None:
    # Double-submit check; returns a failure reason or None when the pair matches.
    if not header_token or not cookie_token:
        return "CSRF token missing"
    if not hmac.compare_digest(header_token, cookie_token):
        return "CSRF token mismatch"
    return None


def check_body_user_id(body: Mapping[str, Any] | None, user_id: str) -> bool:
    # A declared userId must match the token subject; absence is not a mismatch.
    if not body or "userId" not in body or body.get("userId") is None:
        return True
    return str(body.get("userId")) == user_id


async def is_admin(store: DocumentStore, user_id: str, email: str, admin_email: str | None) -> bool:
    # Role (or legacy isAdmin) AND the configured admin email; no configured email denies everyone.
    if not admin_email:
        logger.error("admin_email_not_configured")
        return False
    if email.strip().lower() != admin_email.strip().lower():
        return False
    profile = await store.get(SUBSCRIBED_USERS_COLLECTION, user_id)
    if profile is None:
        return False
    return profile.get("role") == "admin" or profile.get("isAdmin") is True


async def check_subscription(store: DocumentStore, user_id: str, now_ms: int) -> QuotaStatus:
    # Read-only: consumption happens later in the lifecycle service.
    subscriber = await store.get(SUBSCRIBED_USERS_COLLECTION, user_id)
    trial = None if subscriber is not None else await store.get(TRIAL_USERS_COLLECTION, user_id)
    return quota_for(subscriber, trial, now_ms)


def build_endpoint_policies(settings: Settings) -> dict[str, EndpointPolicy]:
    csrf = settings.csrf_enforced
    return {
        "check-user-status": EndpointPolicy(
            name="check-user-status",
            allowed_methods=frozenset({"GET"}),
            rate_limit=RateLimitRule(
                "api_user_status", settings.rl_user_status_max_requests, settings.rl_user_status_window_ms
            ),
        ),
        "create-trial-user": EndpointPolicy(
            name="create-trial-user",
            allowed_methods=frozenset({"POST"}),
            require_csrf=csrf,
            rate_limit=RateLimitRule(
                "auth_trial_signup", settings.rl_trial_signup_max_requests, settings.rl_trial_signup_window_ms
            ),
        ),
        "upgrade-to-subscription": EndpointPolicy(
            name="upgrade-to-subscription",
            allowed_methods=frozenset({"POST"}),
            require_auth=False,
            allow_missing_origin=True,
            rate_limit=RateLimitRule("webhook_upgrade", settings.rl_upgrade_max_requests, settings.rl_upgrade_window_ms),
        ),
        "generate": EndpointPolicy(
            name="generate",
            allowed_methods=frozenset({"POST"}),
            require_subscription=True,
            require_csrf=csrf,
            rate_limit=RateLimitRule("api_generate", settings.rl_generate_max_requests, settings.rl_generate_window_ms),
        ),
        "admin": EndpointPolicy(
            name="admin",
            allowed_methods=frozenset({"POST"}),
            require_admin=True,
            require_csrf=csrf,
            enforce_body_user_id=False,
            rate_limit=RateLimitRule("auth_admin", settings.rl_admin_max_requests, settings.rl_admin_window_ms),
        ),
        "paypal": EndpointPolicy(
            name="paypal",
            allowed_methods=frozenset({"POST"}),
            require_csrf=csrf,
            rate_limit=RateLimitRule("api_paypal", settings.rl_paypal_max_requests, settings.rl_paypal_window_ms),
        ),
    }


def payment_rule(settings: Settings) -> RateLimitRule:
    # Stricter per (ip, user) window in front of payment processor calls.
    return RateLimitRule("payment_paypal", settings.rl_payment_max_requests, settings.rl_payment_window_ms)
