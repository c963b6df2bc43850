from __future__ import annotations

from typing import Any

import pytest

from productscribe.core.config import get_settings
from productscribe.domain.accounts import SUBSCRIBED_USERS_COLLECTION, TRIAL_USERS_COLLECTION
from productscribe.services.security_monitor import EVENTS_COLLECTION
from productscribe.tests.utils.app import (
    ORIGIN,
    ApiHarness,
    api_client,
    browser_headers,
    build_harness,
    seed_subscriber,
    signed_webhook,
)


def _token(harness: ApiHarness, uid: str = "user-1", **kwargs: Any) -> str:
    return harness.tokens.mint(uid, f"{uid}@gmail.com", **kwargs)


def _upgrade_payload(uid: str = "user-1", subscription_id: str = "I-SUB-0001") -> dict[str, Any]:
    return {
        "userId": uid,
        "email": f"{uid}@gmail.com",
        "subscriptionId": subscription_id,
        "planType": "starter",
        "billingCycle": "monthly",
    }


def _event_types(harness: ApiHarness) -> list[str]:
    return [event["eventType"] for event in harness.store.dump(EVENTS_COLLECTION).values()]


@pytest.mark.asyncio
async def test_trial_signup_then_webhook_upgrade_retires_trial() -> None:
    harness = await build_harness()
    async with api_client(harness.components) as client:
        signup = await client.post("/create-trial-user", headers=browser_headers(_token(harness)), json={})
        assert signup.status_code == 200
        assert signup.json()["status"] == "trial"
        assert "user-1" in harness.store.dump(TRIAL_USERS_COLLECTION)

        body, headers = signed_webhook(_upgrade_payload())
        upgraded = await client.post("/upgrade-to-subscription", content=body, headers=headers)

    assert upgraded.status_code == 200
    assert upgraded.json() == {"success": True, "userId": "user-1", "status": "starter", "idempotent": False}
    assert "user-1" not in harness.store.dump(TRIAL_USERS_COLLECTION)
    subscriber = harness.store.dump(SUBSCRIBED_USERS_COLLECTION)["user-1"]
    assert subscriber["planType"] == "starter"
    assert subscriber["maxUsage"] == 50
    assert subscriber["isSubscribed"] is True
    assert subscriber["monthlyUsage"] == 0
    assert subscriber["previousStatus"] == "trial"


@pytest.mark.asyncio
async def test_replayed_webhook_is_idempotent() -> None:
    harness = await build_harness()
    body, headers = signed_webhook(_upgrade_payload())
    async with api_client(harness.components) as client:
        first = await client.post("/upgrade-to-subscription", content=body, headers=headers)
        stored = dict(harness.store.dump(SUBSCRIBED_USERS_COLLECTION)["user-1"])
        harness.clock.advance(120)
        second = await client.post("/upgrade-to-subscription", content=body, headers=headers)

    assert first.json()["idempotent"] is False
    assert second.status_code == 200
    assert second.json()["idempotent"] is True
    assert harness.store.dump(SUBSCRIBED_USERS_COLLECTION)["user-1"] == stored


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_rejected_and_recorded() -> None:
    harness = await build_harness()
    body, headers = signed_webhook(_upgrade_payload(), secret="not-the-secret")
    async with api_client(harness.components) as client:
        response = await client.post("/upgrade-to-subscription", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert harness.store.dump(SUBSCRIBED_USERS_COLLECTION) == {}
    assert "webhook_abuse" in _event_types(harness)


@pytest.mark.asyncio
async def test_webhook_without_configured_secret_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPGRADE_WEBHOOK_SECRET", "")
    get_settings.cache_clear()
    harness = await build_harness()
    body, headers = signed_webhook(_upgrade_payload())
    async with api_client(harness.components) as client:
        response = await client.post("/upgrade-to-subscription", content=body, headers=headers)

    assert response.status_code == 503
    assert response.json()["code"] == "WEBHOOK_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_webhook_rejects_unknown_plan() -> None:
    harness = await build_harness()
    payload = {**_upgrade_payload(), "planType": "platinum"}
    body, headers = signed_webhook(payload)
    async with api_client(harness.components) as client:
        response = await client.post("/upgrade-to-subscription", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INPUT"
    assert "planType" in response.json()["fields"]


@pytest.mark.asyncio
async def test_reused_token_is_rejected_as_replay() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    token = _token(harness)
    async with api_client(harness.components) as client:
        first = await client.get("/check-user-status", headers=browser_headers(token))
        second = await client.get("/check-user-status", headers=browser_headers(token))

    assert first.status_code == 200
    assert second.status_code == 401
    assert second.json()["code"] == "TOKEN_REPLAY_DETECTED"
    assert second.headers["WWW-Authenticate"] == "Bearer"
    assert "token_replay_detected" in _event_types(harness)


@pytest.mark.asyncio
async def test_store_partition_fails_closed() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    harness.store.fail_collections.add("_healthCheck")
    async with api_client(harness.components) as client:
        response = await client.post(
            "/generate",
            headers=browser_headers(_token(harness)),
            json={"userId": "user-1", "brandTone": "luxury", "productUrl": "https://shop.example/p/1"},
        )

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "PARTITION_DETECTED"
    assert body["error"] == "Service temporarily unavailable"
    assert harness.description_model.calls == []


@pytest.mark.asyncio
async def test_exhausted_quota_is_refused_before_generation() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1", monthlyUsage=50)
    async with api_client(harness.components) as client:
        response = await client.post(
            "/generate",
            headers=browser_headers(_token(harness)),
            json={"userId": "user-1", "brandTone": "luxury", "productUrl": "https://shop.example/p/1"},
        )

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "USAGE_LIMIT_EXCEEDED"
    assert body["usage"] == {"currentUsage": 50, "maxUsage": 50, "subscriptionType": "starter"}
    assert harness.description_model.calls == []


@pytest.mark.asyncio
async def test_foreign_origin_is_refused() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1")
    async with api_client(harness.components) as client:
        response = await client.post(
            "/generate",
            headers=browser_headers(_token(harness), origin="https://evil.example"),
            json={"userId": "user-1", "brandTone": "luxury", "productUrl": "https://shop.example/p/1"},
        )

    assert response.status_code == 403
    assert response.json()["code"] == "ORIGIN_NOT_ALLOWED"
    assert "Access-Control-Allow-Origin" not in response.headers
    assert "suspicious_activity" in _event_types(harness)


@pytest.mark.asyncio
async def test_preflight_only_for_allowed_origins() -> None:
    harness = await build_harness()
    async with api_client(harness.components) as client:
        allowed = await client.options(
            "/generate", headers={"Origin": ORIGIN, "Access-Control-Request-Method": "POST"}
        )
        refused = await client.options(
            "/generate", headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"}
        )

    assert allowed.status_code == 204
    assert allowed.headers["Access-Control-Allow-Origin"] == ORIGIN
    assert allowed.headers["Access-Control-Allow-Methods"] == "OPTIONS, POST"
    assert allowed.headers["Access-Control-Max-Age"] == "86400"
    assert refused.status_code == 403
    assert "Access-Control-Allow-Origin" not in refused.headers


@pytest.mark.asyncio
async def test_payment_window_throttles_attempts_after_the_third() -> None:
    harness = await build_harness()
    statuses: list[int] = []
    async with api_client(harness.components) as client:
        for _ in range(5):
            response = await client.post(
                "/paypal",
                headers=browser_headers(_token(harness)),
                json={"action": "create_subscription", "planName": "starter"},
            )
            statuses.append(response.status_code)

    assert statuses == [200, 200, 200, 429, 429]
    body = response.json()
    assert body["code"] == "PAYMENT_RATE_LIMITED"
    assert body["retryAfter"] == 300
    assert response.headers["Retry-After"] == "300"
    assert len(harness.payment_provider.created) == 3
    assert _event_types(harness) == ["rate_limit_exceeded", "rate_limit_exceeded"]
    reasons = {event["payload"]["reason"] for event in harness.store.dump(EVENTS_COLLECTION).values()}
    assert reasons == {"payment_window"}


@pytest.mark.asyncio
async def test_every_response_carries_security_headers() -> None:
    harness = await build_harness()
    async with api_client(harness.components) as client:
        response = await client.get("/check-user-status", headers=browser_headers(None))

    assert response.status_code == 401
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Request-Id"]


GENERATE_BODY = {"userId": "user-1", "brandTone": "casual", "productUrl": "https://shop.example/p/1"}


@pytest.mark.asyncio
async def test_generation_stops_at_plan_limit() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1", maxUsage=3)
    statuses: list[int] = []
    async with api_client(harness.components) as client:
        for _ in range(4):
            response = await client.post("/generate", headers=browser_headers(_token(harness)), json=GENERATE_BODY)
            statuses.append(response.status_code)

    assert statuses == [200, 200, 200, 403]
    assert response.json()["code"] == "USAGE_LIMIT_EXCEEDED"
    assert harness.store.dump(SUBSCRIBED_USERS_COLLECTION)["user-1"]["monthlyUsage"] == 3
    assert len(harness.description_model.calls) == 3


@pytest.mark.asyncio
async def test_generate_window_admits_thirty_per_minute() -> None:
    harness = await build_harness()
    await seed_subscriber(harness.store, "user-1", planType="enterprise", maxUsage=1000)

    def headers() -> dict[str, str]:
        # Fresh token per request; all traffic comes from one address.
        return browser_headers(_token(harness), ip="9.9.9.9")

    async with api_client(harness.components) as client:
        for _ in range(30):
            response = await client.post("/generate", headers=headers(), json=GENERATE_BODY)
            assert response.status_code == 200
        throttled = await client.post("/generate", headers=headers(), json=GENERATE_BODY)
        harness.clock.advance(61)
        recovered = await client.post("/generate", headers=headers(), json=GENERATE_BODY)

    assert throttled.status_code == 429
    assert throttled.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert throttled.json()["retryAfter"] == 60
    assert throttled.headers["X-RateLimit-Remaining"] == "0"
    assert _event_types(harness) == ["rate_limit_exceeded"]
    assert harness.store.dump("rate_limiting_security_events") == {}
    assert recovered.status_code == 200
