from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
import logging
import random
import time
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from productscribe.core.config import Settings, get_settings
from productscribe.core.errors import IntegrationUnavailableError
from productscribe.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Breakers share state through Redis only when REDIS_URL is set; otherwise each process keeps its own.
    settings = get_settings()
    if not settings.redis_url:
        return None
    global _redis_client, _redis_loop
    loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_loop is loop:
        return _redis_client
    async with _redis_lock:
        if _redis_client is None or _redis_loop is not loop:
            try:
                _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            except ValueError as exc:
                logger.warning("resilience_redis_url_invalid", exc_info=exc)
                return None
            _redis_loop = loop
    return _redis_client


def reset_resilience_state() -> None:
    # Drop the cached Redis client so tests can swap settings between runs.
    global _redis_client, _redis_loop
    _redis_client = None
    _redis_loop = None


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=max(1, settings.ext_retry_max_attempts),
            backoff_ms=settings.ext_retry_backoff_ms,
        )


def is_transient(exc: Exception) -> bool:
    # Timeouts, socket errors and upstream 5xx are worth another attempt; everything else is final.
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Run an outbound call with a per-attempt timeout and jittered exponential backoff."""
    policy = policy or RetryPolicy.from_settings(get_settings())
    retryable = retryable or is_transient
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-transient failures are re-raised to the caller
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            delay_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
            logger.info("external_call_retry attempt=%s delay_ms=%s", attempt, int(delay_s * 1000))
            await asyncio.sleep(delay_s)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {BreakerState.CLOSED: 0.0, BreakerState.HALF_OPEN: 0.5, BreakerState.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=max(1, settings.cb_failure_threshold),
            open_seconds=settings.cb_open_seconds,
            half_open_trials=max(1, settings.cb_half_open_trials),
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_redis(self) -> dict[str, str]:
        return {
            "state": self.state.value,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_redis(cls, raw: dict[str, str]) -> "BreakerSnapshot":
        opened_at = raw.get("opened_at")
        return cls(
            state=BreakerState(raw.get("state", BreakerState.CLOSED.value)),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials") or 0),
        )


class CircuitBreaker:
    """Short-circuits calls to a failing dependency (the document store or an upstream API).

    Opens after failure_threshold consecutive failures, admits half_open_trials probe calls once
    open_seconds have passed, and closes again on the first success.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings(get_settings())
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._local = BreakerSnapshot()

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._key())
        return BreakerSnapshot.from_redis(raw) if raw else self._local

    async def _save(self, snapshot: BreakerSnapshot) -> None:
        self._local = snapshot
        if self._redis is None:
            return
        await self._redis.hset(self._key(), mapping=snapshot.to_redis())
        # Stale breaker keys expire well after any open window would have elapsed.
        await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))

    async def _move(self, snapshot: BreakerSnapshot, target: BreakerState) -> BreakerSnapshot:
        if snapshot.state is not target:
            logger.warning(
                "circuit_breaker_transition name=%s from=%s to=%s", self._name, snapshot.state.value, target.value
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target.value}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
            if self._on_transition is not None:
                await self._on_transition(self._name, target.value)
        return BreakerSnapshot(state=target, opened_at=self._time() if target is BreakerState.OPEN else None)

    async def current_state(self) -> str:
        return (await self._load()).state.value

    async def before_call(self) -> BreakerSnapshot:
        # Raises while open; half-open admits a bounded number of probe calls.
        snapshot = await self._load()
        if snapshot.state is BreakerState.OPEN:
            elapsed = self._time() - (snapshot.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            snapshot = await self._move(snapshot, BreakerState.HALF_OPEN)
        if snapshot.state is BreakerState.HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
            await self._save(snapshot)
        return snapshot

    async def record_success(self) -> None:
        snapshot = await self._load()
        if snapshot.state is BreakerState.CLOSED and snapshot.failures == 0:
            return
        await self._save(await self._move(snapshot, BreakerState.CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._load()
        if snapshot.state is BreakerState.HALF_OPEN:
            await self._save(await self._move(snapshot, BreakerState.OPEN))
            return
        failures = snapshot.failures + 1
        if failures >= self._config.failure_threshold:
            increment_counter("circuit_breaker_open_total")
            await self._save(await self._move(snapshot, BreakerState.OPEN))
            return
        await self._save(replace(snapshot, failures=failures))
