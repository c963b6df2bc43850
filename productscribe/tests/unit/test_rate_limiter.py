from __future__ import annotations

import pytest

from productscribe.core.config import get_settings
from productscribe.services.rate_limiter import (
    ACTIVITY_AUTH_FAILED,
    ACTIVITY_RATE_LIMITED,
    FRAUD_COLLECTION,
    REASON_FAILSAFE_DENIED,
    REASON_FRAUD_LOCKOUT,
    REASON_RATE_LIMITED,
    REASON_TOKEN_REPLAY,
    DistributedRateLimiter,
    FraudPolicy,
    RateLimiterConfig,
    RateLimitRule,
    is_privileged_type,
    rate_limit_collection,
    score_fraud_activities,
)
from productscribe.services.telemetry import counters_snapshot
from productscribe.services.token_replay import ReplayPolicy, TokenReplayGuard
from productscribe.tests.utils.clock import FakeClock
from productscribe.tests.utils.stores import FlakyDocumentStore


GENERATE_RULE = RateLimitRule("api_generate", 3, 60_000)
PAYMENT_RULE = RateLimitRule("payment_paypal", 3, 300_000)


def _limiter(store: FlakyDocumentStore, clock: FakeClock) -> DistributedRateLimiter:
    settings = get_settings()
    replay = TokenReplayGuard(store, ReplayPolicy.from_settings(settings), time_provider=clock)
    return DistributedRateLimiter(
        store,
        RateLimiterConfig.from_settings(settings),
        FraudPolicy.from_settings(settings),
        replay_guard=replay,
        time_provider=clock,
    )


@pytest.mark.asyncio
async def test_sliding_window_admits_exactly_max_requests() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    limiter = _limiter(store, clock)

    remaining = []
    for _ in range(3):
        decision = await limiter.check_rate_limit("198.51.100.7:generate", GENERATE_RULE, client_ip="198.51.100.7")
        assert decision.allowed is True
        remaining.append(decision.remaining)
    assert remaining == [2, 1, 0]

    denied = await limiter.check_rate_limit("198.51.100.7:generate", GENERATE_RULE, client_ip="198.51.100.7")
    assert denied.allowed is False
    assert denied.reason == REASON_RATE_LIMITED
    assert denied.retry_after_s == 60

    clock.advance(30)
    still_denied = await limiter.check_rate_limit("198.51.100.7:generate", GENERATE_RULE)
    assert still_denied.retry_after_s == 30

    clock.advance(31)
    assert (await limiter.check_rate_limit("198.51.100.7:generate", GENERATE_RULE)).allowed is True


@pytest.mark.asyncio
async def test_keys_are_isolated_and_hashed() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    limiter = _limiter(store, clock)
    for _ in range(3):
        await limiter.check_rate_limit("198.51.100.7:generate", GENERATE_RULE)
    other = await limiter.check_rate_limit("198.51.100.8:generate", GENERATE_RULE)
    assert other.allowed is True

    entries = store.dump(rate_limit_collection("api_generate"))
    assert len(entries) == 2
    assert all("198.51.100" not in doc_id for doc_id in entries)
    assert all(entry["expiresAt"] > clock.now * 1000 for entry in entries.values())


@pytest.mark.asyncio
async def test_store_outage_denies_every_instance_without_local_counters() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    workers = [_limiter(store, clock), _limiter(store, clock)]
    store.failing = True
    rule = RateLimitRule("api_generate", 30, 60_000)

    decisions = [await worker.check_rate_limit("203.0.113.1:generate", rule) for worker in workers for _ in range(2)]
    assert [decision.allowed for decision in decisions] == [False] * 4
    assert all(decision.failsafe_mode for decision in decisions)
    assert {decision.reason for decision in decisions} == {REASON_FAILSAFE_DENIED}
    assert decisions[0].retry_after_s == 60
    assert decisions[0].message == "Rate limiting in failsafe mode due to service degradation"

    store.failing = False
    assert (await workers[1].check_rate_limit("203.0.113.1:generate", rule)).allowed is True


@pytest.mark.asyncio
async def test_store_outage_denies_privileged_types() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    limiter = _limiter(store, clock)
    store.failing = True

    assert is_privileged_type("auth_admin") and is_privileged_type("payment_paypal")
    for rule in (RateLimitRule("auth_admin", 30, 60_000), PAYMENT_RULE):
        decision = await limiter.check_rate_limit("203.0.113.1:x", rule, client_ip="203.0.113.1")
        assert decision.allowed is False
        assert decision.reason == REASON_FAILSAFE_DENIED


@pytest.mark.asyncio
async def test_repeated_payment_throttling_escalates_to_lockout() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    limiter = _limiter(store, clock)
    key = "203.0.113.5:user-1"

    for _ in range(3):
        assert (await limiter.check_rate_limit(key, PAYMENT_RULE, client_ip="203.0.113.5", user_id="user-1")).allowed

    # Three throttled attempts: 30 + 30 + 30 plus the machine-regular timing bonus crosses 100.
    for _ in range(3):
        denied = await limiter.check_rate_limit(key, PAYMENT_RULE, client_ip="203.0.113.5", user_id="user-1")
        assert denied.reason == REASON_RATE_LIMITED

    fraud = store.dump(FRAUD_COLLECTION)[limiter.fraud_key("203.0.113.5", "user-1")]
    assert fraud["riskScore"] == 100
    assert "automated_timing" in fraud["patterns"]
    assert fraud["lockedUntil"] == clock.now * 1000 + 3_600_000

    locked = await limiter.check_rate_limit(key, PAYMENT_RULE, client_ip="203.0.113.5", user_id="user-1")
    assert locked.allowed is False
    assert locked.reason == REASON_FRAUD_LOCKOUT
    assert locked.retry_after_s == 3600

    assert counters_snapshot()["payment_fraud_detected_total"] == 1


def test_fraud_scoring_weights_and_patterns() -> None:
    policy = FraudPolicy.from_settings(get_settings())
    now = 10_000_000
    activities = [
        {"type": ACTIVITY_AUTH_FAILED, "endpoint": "paypal", "timestamp": now - 200_000},
        {"type": ACTIVITY_AUTH_FAILED, "endpoint": "paypal", "timestamp": now - 50_000},
    ]
    assert score_fraud_activities(activities, policy, now) == (30, [])

    throttled = [
        {"type": ACTIVITY_RATE_LIMITED, "rateLimitType": "payment_paypal", "endpoint": "paypal", "timestamp": now},
        {"type": ACTIVITY_RATE_LIMITED, "rateLimitType": "api_generate", "endpoint": "generate", "timestamp": now - 400_000},
    ]
    score, patterns = score_fraud_activities(throttled, policy, now)
    assert score == 30
    assert patterns == []


@pytest.mark.asyncio
async def test_token_replay_is_rejected_within_window() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    limiter = _limiter(store, clock)

    first = await limiter.check_rate_limit("ip:generate", GENERATE_RULE, token_id="tok-1")
    assert first.allowed is True
    replay = await limiter.check_rate_limit("ip:generate", GENERATE_RULE, token_id="tok-1")
    assert replay.allowed is False
    assert replay.reason == REASON_TOKEN_REPLAY

    clock.advance(301)
    assert (await limiter.check_rate_limit("ip:generate", GENERATE_RULE, token_id="tok-1")).allowed is True


@pytest.mark.asyncio
async def test_status_inspection_does_not_consume_and_reset_clears() -> None:
    store, clock = FlakyDocumentStore(), FakeClock(1_700_000_000)
    limiter = _limiter(store, clock)
    await limiter.check_rate_limit("k", GENERATE_RULE)

    status = await limiter.get_rate_limit_status("k", GENERATE_RULE)
    assert status["count"] == 1
    assert status["remaining"] == 2
    assert (await limiter.get_rate_limit_status("k", GENERATE_RULE))["count"] == 1

    stats = await limiter.get_statistics(["api_generate"])
    assert stats["totalEntries"] == 1

    await limiter.reset_rate_limit("k", "api_generate")
    assert (await limiter.get_rate_limit_status("k", GENERATE_RULE))["count"] == 0
