from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest

from productscribe.services.authenticator import AuthRequest, AuthResult, AuthState
from productscribe.services.security_monitor import (
    ALERTS_COLLECTION,
    EVENT_FAILED_AUTH,
    EVENT_SUSPICIOUS_ACTIVITY,
    EVENTS_COLLECTION,
    SEVERITY_MEDIUM,
)
from productscribe.tests.utils.app import ORIGIN, ApiHarness, build_harness, seed_admin, seed_subscriber


def _request(harness: ApiHarness, uid: str | None = "user-1", **overrides: Any) -> AuthRequest:
    values: dict[str, Any] = {
        "method": "POST",
        "endpoint": "generate",
        "client_ip": "198.51.100.50",
        "origin": ORIGIN,
        "authorization": f"Bearer {harness.tokens.mint(uid, f'{uid}@gmail.com')}" if uid else None,
        "user_agent": "pytest",
    }
    values.update(overrides)
    return AuthRequest(**values)


async def _authenticate(harness: ApiHarness, request: AuthRequest, policy_name: str = "generate") -> AuthResult:
    components = harness.components
    return await components.authenticator.authenticate(request, components.policies[policy_name])


def _events(harness: ApiHarness) -> list[dict[str, Any]]:
    return list(harness.store.dump(EVENTS_COLLECTION).values())


@pytest.mark.asyncio
async def test_accepts_subscriber_with_cors_and_quota() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1", monthlyUsage=10)

    result = await _authenticate(harness, _request(harness))
    assert result.authenticated is True
    assert result.claims is not None and result.claims.user_id == "user-1"
    assert result.quota is not None and result.quota.current_usage == 10
    assert result.headers["Access-Control-Allow-Origin"] == ORIGIN
    assert result.headers["X-RateLimit-Remaining"] == "29"
    assert _events(harness) == []


@pytest.mark.asyncio
async def test_wrong_method_and_foreign_origin_are_denied_without_cors() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")

    wrong_method = await _authenticate(harness, _request(harness, method="GET"))
    assert (wrong_method.status_code, wrong_method.code) == (405, "METHOD_NOT_ALLOWED")

    foreign = await _authenticate(harness, _request(harness, origin="https://evil.example"))
    assert (foreign.status_code, foreign.code) == (403, "ORIGIN_NOT_ALLOWED")
    assert "Access-Control-Allow-Origin" not in foreign.headers

    missing = await _authenticate(harness, _request(harness, origin=None))
    assert missing.code == "ORIGIN_NOT_ALLOWED"

    event_types = sorted(event["eventType"] for event in _events(harness))
    assert event_types == ["invalid_method", EVENT_SUSPICIOUS_ACTIVITY, EVENT_SUSPICIOUS_ACTIVITY]
    reasons = [event["payload"]["reason"] for event in _events(harness) if event["eventType"] == EVENT_SUSPICIOUS_ACTIVITY]
    assert reasons == ["origin", "origin"]


@pytest.mark.asyncio
async def test_webhook_policy_needs_no_token_or_origin() -> None:
    harness = await build_harness()
    request = _request(harness, uid=None, endpoint="upgrade-to-subscription", origin=None)
    result = await _authenticate(harness, request, "upgrade-to-subscription")
    assert result.authenticated is True
    assert result.claims is None
    assert "Access-Control-Allow-Origin" not in result.headers


@pytest.mark.asyncio
async def test_missing_and_invalid_tokens() -> None:
    harness = await build_harness()
    missing = await _authenticate(harness, _request(harness, uid=None))
    assert (missing.status_code, missing.code) == (401, "TOKEN_MISSING")
    assert missing.state is AuthState.DENIED

    garbage = await _authenticate(harness, _request(harness, authorization="Basic dXNlcjpwYXNz"))
    assert garbage.code == "TOKEN_MISSING"

    unverified = harness.tokens.mint("user-2", "user-2@gmail.com", email_verified=False)
    result = await _authenticate(harness, _request(harness, authorization=f"Bearer {unverified}"))
    assert (result.status_code, result.code) == (403, "EMAIL_NOT_VERIFIED")
    reasons = sorted(event["payload"]["reason"] for event in _events(harness) if event["eventType"] == EVENT_FAILED_AUTH)
    assert reasons == ["email_not_verified", "token_missing", "token_missing"]


@pytest.mark.asyncio
async def test_mixed_failure_kinds_from_one_address_share_the_alert_threshold() -> None:
    harness = await build_harness()
    codes = []
    for authorization in (None, None, "Bearer abc", "Bearer abc", "Bearer abc"):
        result = await _authenticate(harness, _request(harness, uid=None, authorization=authorization))
        codes.append(result.code)

    assert codes == ["TOKEN_MISSING", "TOKEN_MISSING", "TOKEN_MALFORMED", "TOKEN_MALFORMED", "TOKEN_MALFORMED"]
    alerts = list(harness.store.dump(ALERTS_COLLECTION).values())
    assert len(alerts) == 1
    assert alerts[0]["eventType"] == EVENT_FAILED_AUTH
    assert alerts[0]["alertLevel"] == SEVERITY_MEDIUM
    assert alerts[0]["eventCount"] == 5


@pytest.mark.asyncio
async def test_token_replay_is_denied() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    token = harness.tokens.mint("user-1", "user-1@gmail.com")

    first = await _authenticate(harness, _request(harness, authorization=f"Bearer {token}"))
    assert first.authenticated is True
    second = await _authenticate(harness, _request(harness, authorization=f"Bearer {token}"))
    assert (second.status_code, second.code) == (401, "TOKEN_REPLAY_DETECTED")
    assert [event["eventType"] for event in _events(harness)] == ["token_replay_detected"]


@pytest.mark.asyncio
async def test_partition_denies_and_opens_breaker() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    harness.store.fail_collections.add("_healthCheck")

    codes = [(await _authenticate(harness, _request(harness))).code for _ in range(4)]
    assert codes == ["PARTITION_DETECTED", "PARTITION_DETECTED", "PARTITION_DETECTED", "CIRCUIT_OPEN"]
    assert len(_events(harness)) == 4

    harness.store.fail_collections.clear()
    harness.clock.advance(31)
    recovered = await _authenticate(harness, _request(harness))
    assert recovered.authenticated is True


@pytest.mark.asyncio
async def test_slow_store_counts_as_partition() -> None:
    harness = await build_harness()
    harness.store.read_delay_s = 0.6
    result = await _authenticate(harness, _request(harness))
    assert (result.status_code, result.code) == (503, "PARTITION_DETECTED")
    assert result.message == "Service temporarily unavailable"


@pytest.mark.asyncio
async def test_admin_policy_checks_role_and_email() -> None:
    harness = await build_harness()
    await seed_admin(harness.store)
    await seed_subscriber(harness.store, "user-1", role="admin")

    body = {"action": "get_user", "userId": "user-1"}
    pretender = await _authenticate(harness, _request(harness, endpoint="admin", body=body), "admin")
    assert (pretender.status_code, pretender.code) == (403, "ADMIN_ACCESS_DENIED")

    token = harness.tokens.mint("admin-1", "owner@gmail.com")
    admin = await _authenticate(
        harness, _request(harness, endpoint="admin", authorization=f"Bearer {token}", body=body), "admin"
    )
    assert admin.authenticated is True


@pytest.mark.asyncio
async def test_body_user_id_mismatch_is_critical() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    result = await _authenticate(harness, _request(harness, body={"userId": "user-2"}))
    assert (result.status_code, result.code) == (403, "USER_ID_MISMATCH")
    event = _events(harness)[0]
    assert event["severity"] == "CRITICAL"
    assert event["payload"]["userId"] == "user-1"


@pytest.mark.asyncio
async def test_quota_denial_carries_usage() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1", monthlyUsage=50)
    result = await _authenticate(harness, _request(harness))
    assert (result.status_code, result.code) == (403, "USAGE_LIMIT_EXCEEDED")
    assert result.details["usage"] == {"currentUsage": 50, "maxUsage": 50, "subscriptionType": "starter"}

    await seed_subscriber(harness.store, "user-3", subscriptionStatus="CANCELLED")
    inactive = await _authenticate(harness, _request(harness, uid="user-3"))
    assert inactive.code == "SUBSCRIPTION_INACTIVE"


@pytest.mark.asyncio
async def test_csrf_enforced_on_mutations_when_enabled() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    policy = replace(harness.components.policies["generate"], require_csrf=True)
    authenticator = harness.components.authenticator

    missing = await authenticator.authenticate(_request(harness), policy)
    assert missing.code == "CSRF_VALIDATION_FAILED"

    paired = _request(harness, cookie_header="csrf_token=tok123", csrf_header="tok123")
    assert (await authenticator.authenticate(paired, policy)).authenticated is True


@pytest.mark.asyncio
async def test_rate_limit_denial_and_failsafe_privileged() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    policy = replace(
        harness.components.policies["generate"],
        rate_limit=replace(harness.components.policies["generate"].rate_limit, max_requests=1),
    )
    authenticator = harness.components.authenticator
    assert (await authenticator.authenticate(_request(harness), policy)).authenticated is True
    limited = await authenticator.authenticate(_request(harness), policy)
    assert (limited.status_code, limited.code) == (429, "RATE_LIMIT_EXCEEDED")
    assert limited.retry_after_s == 60

    harness.store.fail_collections.add("rate_limiting_auth_admin")
    await seed_admin(harness.store)
    token = harness.tokens.mint("admin-1", "owner@gmail.com")
    denied = await _authenticate(harness, _request(harness, endpoint="admin", authorization=f"Bearer {token}"), "admin")
    assert (denied.status_code, denied.code) == (503, "SERVICE_UNAVAILABLE")


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_system_error(monkeypatch: pytest.MonkeyPatch) -> None:
    harness = await build_harness()

    async def explode(token: str | None) -> Any:
        raise RuntimeError("boom")

    monkeypatch.setattr(harness.components.identity, "verify", explode)
    result = await _authenticate(harness, _request(harness))
    assert result.state is AuthState.ERROR
    assert (result.status_code, result.code) == (500, "SYSTEM_ERROR")
    assert len(_events(harness)) == 1
