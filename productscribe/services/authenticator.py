from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Mapping

from productscribe.core.config import Settings
from productscribe.core.errors import DocumentStoreError, IdentityVerificationError, IntegrationUnavailableError
from productscribe.core.primitives import TimeProvider, epoch_ms, generate_id
from productscribe.domain.accounts import QuotaStatus
from productscribe.persistence.documents import DocumentStore, with_store_timeout
from productscribe.services.audit import sanitize_error_text
from productscribe.services.identity import VERIFICATION_TIMEOUT, IdentityVerifier, VerifiedClaims
from productscribe.services.policy import (
    MUTATING_METHODS,
    EndpointPolicy,
    check_body_user_id,
    check_csrf,
    check_subscription,
    cookie_value,
    cors_headers,
    is_admin,
    parse_origins,
    validate_origin,
)
from productscribe.services.rate_limiter import (
    ACTIVITY_AUTH_FAILED,
    REASON_FAILSAFE_DENIED,
    REASON_FRAUD_LOCKOUT,
    REASON_SYSTEM_ERROR,
    REASON_TOKEN_REPLAY,
    DistributedRateLimiter,
    RateLimitDecision,
)
from productscribe.services.resilience import CircuitBreaker
from productscribe.services.security_monitor import (
    EVENT_FAILED_AUTH,
    EVENT_SUSPICIOUS_ACTIVITY,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    SecurityEvent,
    SecurityMonitor,
)
from productscribe.services.telemetry import increment_counter
from productscribe.services.token_replay import TokenReplayGuard


logger = logging.getLogger(__name__)

HEALTH_CHECK_COLLECTION = "_healthCheck"
HEALTH_CHECK_DOC = "connectivity"

UNAVAILABLE_MESSAGE = "Service temporarily unavailable"


class AuthState(str, Enum):
    UNKNOWN = "UNKNOWN"
    VALIDATING = "VALIDATING"
    AUTHENTICATED = "AUTHENTICATED"
    DENIED = "DENIED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class FailSafeConfig:
    total_timeout_ms: int
    store_timeout_ms: int
    probe_timeout_ms: int
    allowed_origins: tuple[str, ...]
    admin_email: str | None
    csrf_cookie_name: str
    payment_endpoints: frozenset[str] = frozenset({"paypal"})

    @classmethod
    def from_settings(cls, settings: Settings) -> "FailSafeConfig":
        return cls(
            total_timeout_ms=settings.auth_total_timeout_ms,
            store_timeout_ms=settings.store_timeout_ms,
            probe_timeout_ms=settings.partition_probe_timeout_ms,
            allowed_origins=parse_origins(settings.allowed_origins),
            admin_email=settings.admin_email,
            csrf_cookie_name=settings.csrf_cookie_name,
        )


@dataclass(frozen=True)
class AuthRequest:
    method: str
    endpoint: str
    client_ip: str
    origin: str | None = None
    authorization: str | None = None
    user_agent: str = "unknown"
    cookie_header: str | None = None
    csrf_header: str | None = None
    body: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class AuthResult:
    state: AuthState
    operation_id: str
    status_code: int = 200
    code: str | None = None
    message: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    claims: VerifiedClaims | None = None
    quota: QuotaStatus | None = None
    rate_limit: RateLimitDecision | None = None
    retry_after_s: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def authenticated(self) -> bool:
        # Only the explicit accepting state grants access.
        return self.state is AuthState.AUTHENTICATED


@dataclass(frozen=True)
class _Denial:
    status_code: int
    code: str
    message: str
    event_type: str
    severity: str
    state: AuthState = AuthState.DENIED
    retry_after_s: int | None = None
    user_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    # Sub-kind carried in the event payload; the event type stays canonical so counts aggregate.
    event_reason: str | None = None


def parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class FailSafeAuthenticator:
    """Deny-by-default request pipeline; every non-accepting outcome is a denial."""

    def __init__(
        self,
        store: DocumentStore,
        rate_limiter: DistributedRateLimiter,
        monitor: SecurityMonitor,
        identity: IdentityVerifier,
        replay_guard: TokenReplayGuard,
        breaker: CircuitBreaker,
        config: FailSafeConfig,
        *,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._monitor = monitor
        self._identity = identity
        self._replay = replay_guard
        self._breaker = breaker
        self._config = config
        self._time = time_provider

    @property
    def config(self) -> FailSafeConfig:
        return self._config

    async def authenticate(self, request: AuthRequest, policy: EndpointPolicy) -> AuthResult:
        operation_id = generate_id("auth", epoch_ms(self._time), nbytes=4)
        headers: dict[str, str] = {}
        outcome: AuthResult | _Denial
        try:
            outcome = await asyncio.wait_for(
                self._pipeline(request, policy, operation_id, headers),
                timeout=self._config.total_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.error("auth_budget_exceeded endpoint=%s operation_id=%s", policy.name, operation_id)
            outcome = _Denial(
                503, "AUTH_TIMEOUT", UNAVAILABLE_MESSAGE, "system_error_auth_timeout", SEVERITY_CRITICAL
            )
        except Exception as exc:  # noqa: BLE001 - fail-safe seam; unknown failures deny
            logger.error(
                "auth_pipeline_error endpoint=%s operation_id=%s error=%s",
                policy.name,
                operation_id,
                type(exc).__name__,
                exc_info=exc,
            )
            outcome = _Denial(
                500,
                "SYSTEM_ERROR",
                "Authentication system error",
                "system_error_unexpected",
                SEVERITY_CRITICAL,
                state=AuthState.ERROR,
            )
        if isinstance(outcome, AuthResult):
            increment_counter("auth_authenticated_total")
            return outcome
        return await self._deny(request, policy, operation_id, headers, outcome)

    async def _deny(
        self,
        request: AuthRequest,
        policy: EndpointPolicy,
        operation_id: str,
        headers: dict[str, str],
        denial: _Denial,
    ) -> AuthResult:
        increment_counter(f"auth_denied_total.{denial.code}")
        logger.warning(
            "auth_denied endpoint=%s code=%s status=%s operation_id=%s",
            policy.name,
            denial.code,
            denial.status_code,
            operation_id,
        )
        # Exactly one monitor event per denial; recording is best-effort.
        try:
            await self._monitor.record_security_event(
                SecurityEvent(
                    event_type=denial.event_type,
                    severity=denial.severity,
                    client_ip=request.client_ip,
                    user_id=denial.user_id,
                    endpoint=policy.name,
                    details={
                        "code": denial.code,
                        "operationId": operation_id,
                        "userAgent": request.user_agent,
                        **({"reason": denial.event_reason} if denial.event_reason else {}),
                    },
                )
            )
        except Exception as exc:  # noqa: BLE001 - monitoring must not change the denial
            logger.error("auth_denial_event_failed operation_id=%s", operation_id, exc_info=exc)
        return AuthResult(
            state=denial.state,
            operation_id=operation_id,
            status_code=denial.status_code,
            code=denial.code,
            message=sanitize_error_text(denial.message),
            headers=dict(headers),
            retry_after_s=denial.retry_after_s,
            details=dict(denial.details),
        )

    async def _probe_store(self) -> bool:
        try:
            await with_store_timeout(
                self._store.get(HEALTH_CHECK_COLLECTION, HEALTH_CHECK_DOC),
                self._config.probe_timeout_ms,
            )
        except DocumentStoreError as exc:
            logger.error("auth_partition_detected error=%s", type(exc).__name__)
            await self._breaker.record_failure()
            return False
        await self._breaker.record_success()
        return True

    def _store_failure(self, user_id: str | None = None) -> _Denial:
        return _Denial(
            503, "STORE_UNAVAILABLE", UNAVAILABLE_MESSAGE, "system_error_store", SEVERITY_CRITICAL, user_id=user_id
        )

    def _rate_limit_denial(self, decision: RateLimitDecision) -> _Denial:
        if decision.reason == REASON_FRAUD_LOCKOUT:
            return _Denial(
                429,
                "FRAUD_LOCKOUT",
                "Too many payment attempts. Access temporarily locked.",
                "payment_fraud_lockout",
                SEVERITY_CRITICAL,
                retry_after_s=decision.retry_after_s,
            )
        if decision.reason == REASON_TOKEN_REPLAY:
            return _Denial(401, "TOKEN_REPLAY_DETECTED", "Token replay detected", "token_replay_detected", SEVERITY_CRITICAL)
        if decision.reason in (REASON_FAILSAFE_DENIED, REASON_SYSTEM_ERROR):
            return _Denial(
                503,
                "SERVICE_UNAVAILABLE",
                UNAVAILABLE_MESSAGE,
                "system_error_rate_limiter",
                SEVERITY_CRITICAL,
                retry_after_s=decision.retry_after_s,
                details={"failsafeMode": True} if decision.failsafe_mode else {},
            )
        return _Denial(
            429,
            "RATE_LIMIT_EXCEEDED",
            "Too many requests. Please try again later.",
            "rate_limit_exceeded",
            SEVERITY_MEDIUM,
            retry_after_s=decision.retry_after_s,
        )

    async def _pipeline(
        self,
        request: AuthRequest,
        policy: EndpointPolicy,
        operation_id: str,
        headers: dict[str, str],
    ) -> AuthResult | _Denial:
        method = request.method.upper()
        if method not in policy.allowed_methods:
            return _Denial(405, "METHOD_NOT_ALLOWED", "Method not allowed", "invalid_method", SEVERITY_LOW)

        origin = validate_origin(
            request.origin, self._config.allowed_origins, allow_missing=policy.allow_missing_origin
        )
        if not origin.allowed:
            return _Denial(
                403,
                "ORIGIN_NOT_ALLOWED",
                "Origin not allowed",
                EVENT_SUSPICIOUS_ACTIVITY,
                SEVERITY_MEDIUM,
                event_reason="origin",
            )
        headers.update(cors_headers(origin.origin, policy.allowed_methods))

        try:
            await self._breaker.before_call()
        except IntegrationUnavailableError:
            return _Denial(503, "CIRCUIT_OPEN", UNAVAILABLE_MESSAGE, "system_error_circuit_open", SEVERITY_CRITICAL)
        if not await self._probe_store():
            return _Denial(503, "PARTITION_DETECTED", UNAVAILABLE_MESSAGE, "system_error_partition", SEVERITY_CRITICAL)

        decision: RateLimitDecision | None = None
        if policy.rate_limit is not None:
            decision = await self._rate_limiter.check_rate_limit(
                f"{request.client_ip}:{policy.name}",
                policy.rate_limit,
                client_ip=request.client_ip,
                user_agent=request.user_agent,
                endpoint=policy.name,
            )
            headers["X-RateLimit-Remaining"] = str(decision.remaining)
            if not decision.allowed:
                return self._rate_limit_denial(decision)

        if not policy.require_auth:
            return AuthResult(AuthState.AUTHENTICATED, operation_id, headers=dict(headers), rate_limit=decision)

        try:
            claims = await self._identity.verify(parse_bearer(request.authorization))
        except IdentityVerificationError as exc:
            if policy.name in self._config.payment_endpoints:
                await self._rate_limiter.record_fraud_activity(
                    request.client_ip, None, ACTIVITY_AUTH_FAILED, policy.name
                )
            severity = SEVERITY_CRITICAL if exc.kind == VERIFICATION_TIMEOUT else SEVERITY_MEDIUM
            return _Denial(
                exc.status_code, exc.kind, exc.message, EVENT_FAILED_AUTH, severity, event_reason=exc.kind.lower()
            )

        user_id = claims.user_id
        if claims.token_id is None:
            return _Denial(
                401,
                "MISSING_CLAIMS",
                "Token is missing required claims",
                EVENT_FAILED_AUTH,
                SEVERITY_MEDIUM,
                user_id=user_id,
                event_reason="missing_claims",
            )
        try:
            replay = await self._replay.check_and_record(
                claims.token_id, context_key=f"{request.client_ip}:{policy.name}"
            )
        except DocumentStoreError:
            await self._breaker.record_failure()
            return self._store_failure(user_id)
        if not replay.allowed:
            return _Denial(
                401, "TOKEN_REPLAY_DETECTED", "Token replay detected", "token_replay_detected", SEVERITY_CRITICAL, user_id=user_id
            )

        now = epoch_ms(self._time)
        quota: QuotaStatus | None = None
        try:
            if policy.require_admin:
                allowed = await with_store_timeout(
                    is_admin(self._store, user_id, claims.email, self._config.admin_email),
                    self._config.store_timeout_ms,
                )
                if not allowed:
                    return _Denial(
                        403,
                        "ADMIN_ACCESS_DENIED",
                        "Admin access required",
                        "admin_access_violation",
                        SEVERITY_CRITICAL,
                        user_id=user_id,
                    )
            if policy.require_subscription:
                quota = await with_store_timeout(
                    check_subscription(self._store, user_id, now),
                    self._config.store_timeout_ms,
                )
                if not quota.allowed:
                    return _Denial(
                        403,
                        quota.code,
                        _quota_message(quota),
                        "quota_exceeded" if quota.code == "USAGE_LIMIT_EXCEEDED" else "subscription_check_failed",
                        SEVERITY_LOW,
                        user_id=user_id,
                        details={"usage": quota.as_usage()},
                    )
        except DocumentStoreError:
            await self._breaker.record_failure()
            return self._store_failure(user_id)

        if policy.require_csrf and method in MUTATING_METHODS:
            reason = check_csrf(request.csrf_header, cookie_value(request.cookie_header, self._config.csrf_cookie_name))
            if reason is not None:
                return _Denial(
                    403,
                    "CSRF_VALIDATION_FAILED",
                    reason,
                    EVENT_SUSPICIOUS_ACTIVITY,
                    SEVERITY_HIGH,
                    user_id=user_id,
                    event_reason="csrf",
                )

        if policy.enforce_body_user_id and not check_body_user_id(request.body, user_id):
            return _Denial(
                403,
                "USER_ID_MISMATCH",
                "Access denied: User ID mismatch",
                EVENT_SUSPICIOUS_ACTIVITY,
                SEVERITY_CRITICAL,
                user_id=user_id,
                event_reason="user_id_mismatch",
            )

        return AuthResult(
            AuthState.AUTHENTICATED,
            operation_id,
            headers=dict(headers),
            claims=claims,
            quota=quota,
            rate_limit=decision,
        )


def _quota_message(quota: QuotaStatus) -> str:
    if quota.code == "USAGE_LIMIT_EXCEEDED":
        if quota.kind == "trial":
            return "Trial limit reached. Upgrade to a paid plan for more generations."
        return "Monthly usage limit reached. Your usage will reset at the beginning of your next billing cycle."
    if quota.code == "TRIAL_EXPIRED":
        return "Your trial has expired. Upgrade to continue."
    if quota.code == "SUBSCRIPTION_INACTIVE":
        return "Subscription is not active. Please renew your subscription to continue."
    return "An active subscription or trial is required."
