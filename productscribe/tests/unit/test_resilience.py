from __future__ import annotations

import pytest

from productscribe.core.errors import IntegrationUnavailableError
from productscribe.services.resilience import (
    BreakerSnapshot,
    BreakerState,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    is_transient,
    retry_async,
)
from productscribe.services.telemetry import counters_snapshot, gauges_snapshot
from productscribe.tests.utils.clock import FakeClock


class UpstreamError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code


def _breaker(clock: FakeClock, transitions: list[str] | None = None) -> CircuitBreaker:
    async def on_transition(name: str, state: str) -> None:
        if transitions is not None:
            transitions.append(state)

    return CircuitBreaker(
        "store.test",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=clock,
        on_transition=on_transition,
    )


@pytest.mark.asyncio
async def test_retry_async_retries_transient_failures() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise UpstreamError(503)
        return "ok"

    result = await retry_async(flaky, policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1))
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    async def rejected() -> str:
        calls["count"] += 1
        raise UpstreamError(400)

    with pytest.raises(UpstreamError):
        await retry_async(rejected, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1
    assert is_transient(TimeoutError()) is True
    assert is_transient(UpstreamError(502)) is True
    assert is_transient(ValueError("bad")) is False


@pytest.mark.asyncio
async def test_breaker_opens_then_probes_and_closes() -> None:
    clock = FakeClock(1000)
    transitions: list[str] = []
    breaker = _breaker(clock, transitions)

    await breaker.before_call()
    await breaker.record_failure()
    assert await breaker.current_state() == "closed"
    await breaker.record_failure()
    assert await breaker.current_state() == "open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    clock.advance(11)
    await breaker.before_call()
    # Only one probe is admitted while half-open.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    assert await breaker.current_state() == "closed"
    assert transitions == ["open", "half_open", "closed"]
    assert counters_snapshot()["circuit_breaker_open_total"] == 1
    assert gauges_snapshot()["circuit_breaker_state.store.test"] == 0.0


@pytest.mark.asyncio
async def test_failed_probe_reopens_breaker() -> None:
    clock = FakeClock(1000)
    breaker = _breaker(clock)
    await breaker.record_failure()
    await breaker.record_failure()
    clock.advance(11)
    await breaker.before_call()
    await breaker.record_failure()
    assert await breaker.current_state() == "open"
    clock.advance(5)
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()


@pytest.mark.asyncio
async def test_success_resets_failure_count() -> None:
    breaker = _breaker(FakeClock(1000))
    await breaker.record_failure()
    await breaker.record_success()
    await breaker.record_failure()
    assert await breaker.current_state() == "closed"


def test_snapshot_round_trips_through_redis_hash() -> None:
    snapshot = BreakerSnapshot(state=BreakerState.OPEN, failures=0, opened_at=1234.5, trials=0)
    assert BreakerSnapshot.from_redis(snapshot.to_redis()) == snapshot
    assert BreakerSnapshot.from_redis({"state": "closed"}) == BreakerSnapshot()
