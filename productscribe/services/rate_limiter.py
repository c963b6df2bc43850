from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any

from productscribe.core.config import Settings
from productscribe.core.errors import DocumentStoreError, TransactionConflictError
from productscribe.core.primitives import TimeProvider, epoch_ms, keyed_digest
from productscribe.persistence.documents import DocumentStore, Transaction, with_store_timeout
from productscribe.services.telemetry import increment_counter
from productscribe.services.token_replay import TokenReplayGuard


logger = logging.getLogger(__name__)

COLLECTION_PREFIX = "rate_limiting"
FRAUD_COLLECTION = f"{COLLECTION_PREFIX}_fraud_detection"

DAY_S = 24 * 60 * 60
# Fraud history is kept as long as critical security events.
FRAUD_RETENTION_S = 90 * DAY_S

REASON_RATE_LIMITED = "rate_limited"
REASON_FRAUD_LOCKOUT = "fraud_lockout"
REASON_TOKEN_REPLAY = "token_replay"
REASON_FAILSAFE_DENIED = "failsafe_denied"
REASON_SYSTEM_ERROR = "system_error"

ACTIVITY_RATE_LIMITED = "rate_limit_exceeded"
ACTIVITY_AUTH_FAILED = "auth_failed"


def is_privileged_type(limit_type: str) -> bool:
    # Authentication and payment limits never degrade open.
    return limit_type.startswith("auth") or limit_type.startswith("payment")


def rate_limit_collection(limit_type: str) -> str:
    return f"{COLLECTION_PREFIX}_{limit_type}"


@dataclass(frozen=True)
class RateLimitRule:
    # One sliding window: at most max_requests per window_ms for a limit type.
    limit_type: str
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimiterConfig:
    hash_secret: str
    transaction_max_attempts: int
    ttl_buffer_ms: int
    max_entries_per_key: int
    store_timeout_ms: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiterConfig":
        return cls(
            hash_secret=settings.hash_secret,
            transaction_max_attempts=max(1, settings.rl_transaction_max_attempts),
            ttl_buffer_ms=settings.rl_ttl_buffer_ms,
            max_entries_per_key=max(1, settings.rl_max_entries_per_key),
            store_timeout_ms=settings.store_timeout_ms,
        )


@dataclass(frozen=True)
class FraudPolicy:
    rapid_payment_threshold: int
    rapid_payment_window_s: int
    pattern_window_s: int
    lockout_s: int
    weight_rate_limited: int
    weight_auth_failed: int
    bonus_rapid_requests: int
    bonus_endpoint_spread: int
    bonus_regular_intervals: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "FraudPolicy":
        return cls(
            rapid_payment_threshold=settings.fraud_rapid_payment_threshold,
            rapid_payment_window_s=settings.fraud_rapid_payment_window_s,
            pattern_window_s=settings.fraud_pattern_window_s,
            lockout_s=settings.fraud_lockout_s,
            weight_rate_limited=settings.fraud_weight_rate_limited,
            weight_auth_failed=settings.fraud_weight_auth_failed,
            bonus_rapid_requests=settings.fraud_bonus_rapid_requests,
            bonus_endpoint_spread=settings.fraud_bonus_endpoint_spread,
            bonus_regular_intervals=settings.fraud_bonus_regular_intervals,
        )


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_time_ms: int
    retry_after_s: int | None = None
    total: int = 0
    failsafe_mode: bool = False
    reason: str | None = None
    locked_until_ms: int | None = None
    message: str | None = None


@dataclass(frozen=True)
class FraudStatus:
    locked: bool
    risk_score: int = 0
    locked_until_ms: int | None = None


def score_fraud_activities(activities: list[dict[str, Any]], policy: FraudPolicy, now_ms: int) -> tuple[int, list[str]]:
    """Weighted fraud risk for the activities still inside the pattern window.

    Returns the capped score and the names of the behavioural patterns that fired.
    """
    rapid_window_ms = policy.rapid_payment_window_s * 1000
    rapid_payments = [
        activity
        for activity in activities
        if activity.get("type") == ACTIVITY_RATE_LIMITED
        and "payment" in str(activity.get("rateLimitType", ""))
        and now_ms - int(activity.get("timestamp", 0)) < rapid_window_ms
    ]
    failed_auths = [activity for activity in activities if activity.get("type") == ACTIVITY_AUTH_FAILED]
    score = len(rapid_payments) * policy.weight_rate_limited + len(failed_auths) * policy.weight_auth_failed

    patterns: list[str] = []
    timestamps = sorted(int(activity.get("timestamp", 0)) for activity in activities)
    rapid = [
        ts
        for index, ts in enumerate(timestamps)
        if (index > 0 and ts - timestamps[index - 1] < 1000)
        or (index + 1 < len(timestamps) and timestamps[index + 1] - ts < 1000)
    ]
    if len(rapid) > 5:
        score += policy.bonus_rapid_requests
        patterns.append("rapid_requests")
    endpoints = {str(activity.get("endpoint")) for activity in activities}
    if len(endpoints) > 5:
        score += policy.bonus_endpoint_spread
        patterns.append("multiple_endpoints")
    # Machine-regular timing needs at least two intervals to be meaningful.
    if len(timestamps) >= 3:
        intervals = [b - a for a, b in zip(timestamps, timestamps[1:])]
        mean = sum(intervals) / len(intervals)
        stddev = math.sqrt(sum((value - mean) ** 2 for value in intervals) / len(intervals))
        if stddev < 1000:
            score += policy.bonus_regular_intervals
            patterns.append("automated_timing")
    return min(score, 100), patterns


class DistributedRateLimiter:
    """Sliding-window limits, fraud lockouts and replay checks shared through the document store."""

    def __init__(
        self,
        store: DocumentStore,
        config: RateLimiterConfig,
        fraud_policy: FraudPolicy,
        *,
        replay_guard: TokenReplayGuard | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._fraud = fraud_policy
        self._replay_guard = replay_guard
        self._time = time_provider

    @property
    def fraud_policy(self) -> FraudPolicy:
        return self._fraud

    def entry_key(self, key: str, limit_type: str) -> str:
        return keyed_digest(limit_type, key, secret=self._config.hash_secret)

    def fraud_key(self, client_ip: str, user_id: str | None) -> str:
        return keyed_digest("fraud", client_ip, user_id or "anonymous", secret=self._config.hash_secret)

    async def check_rate_limit(
        self,
        key: str,
        rule: RateLimitRule,
        *,
        client_ip: str = "unknown",
        user_id: str | None = None,
        user_agent: str = "unknown",
        endpoint: str = "unknown",
        token_id: str | None = None,
    ) -> RateLimitDecision:
        now = epoch_ms(self._time)
        try:
            if token_id is not None and self._replay_guard is not None:
                replay = await self._replay_guard.check_and_record(token_id, context_key=self.entry_key(key, rule.limit_type))
                if not replay.allowed:
                    logger.warning("rate_limit_token_replay type=%s endpoint=%s", rule.limit_type, endpoint)
                    return RateLimitDecision(
                        allowed=False,
                        remaining=0,
                        reset_time_ms=now,
                        reason=REASON_TOKEN_REPLAY,
                        message="Token replay detected",
                    )
            if "payment" in rule.limit_type:
                fraud = await self.check_fraud_lockout(client_ip, user_id)
                if fraud.locked:
                    increment_counter("rate_limit_fraud_lockout_total")
                    return RateLimitDecision(
                        allowed=False,
                        remaining=0,
                        reset_time_ms=fraud.locked_until_ms or now,
                        retry_after_s=self._fraud.lockout_s,
                        reason=REASON_FRAUD_LOCKOUT,
                        locked_until_ms=fraud.locked_until_ms,
                        message="Account temporarily locked due to suspicious activity",
                    )
            decision = await with_store_timeout(
                self._store.run_transaction(
                    lambda txn: self._window_txn(txn, key, rule, client_ip, user_id, user_agent, endpoint),
                    max_attempts=self._config.transaction_max_attempts,
                ),
                self._config.store_timeout_ms,
            )
        except TransactionConflictError:
            # Contention beyond the retry budget denies rather than guessing.
            logger.warning("rate_limit_contention type=%s endpoint=%s", rule.limit_type, endpoint)
            increment_counter("rate_limit_contention_denied_total")
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_time_ms=now + rule.window_ms,
                retry_after_s=1,
                reason=REASON_SYSTEM_ERROR,
                message="Rate limiter busy",
            )
        except DocumentStoreError as exc:
            logger.error("rate_limit_store_unavailable type=%s endpoint=%s", rule.limit_type, endpoint, exc_info=exc)
            return self._failsafe_decision(rule, now)

        if not decision.allowed:
            increment_counter(f"rate_limit_exceeded_total.{rule.limit_type}")
            if "payment" in rule.limit_type:
                await self.record_fraud_activity(
                    client_ip,
                    user_id,
                    ACTIVITY_RATE_LIMITED,
                    endpoint,
                    details={"rateLimitType": rule.limit_type, "requestCount": decision.total, "timeWindow": rule.window_ms},
                )
            logger.info("rate_limit_exceeded type=%s endpoint=%s total=%s", rule.limit_type, endpoint, decision.total)
        return decision

    async def _window_txn(
        self,
        txn: Transaction,
        key: str,
        rule: RateLimitRule,
        client_ip: str,
        user_id: str | None,
        user_agent: str,
        endpoint: str,
    ) -> RateLimitDecision:
        # Each attempt re-reads and re-prunes from scratch.
        now = epoch_ms(self._time)
        collection = rate_limit_collection(rule.limit_type)
        doc_id = self.entry_key(key, rule.limit_type)
        entry = await txn.get(collection, doc_id)
        window_start = now - rule.window_ms
        requests = [int(ts) for ts in (entry or {}).get("requests", []) if int(ts) > window_start]
        if len(requests) >= rule.max_requests:
            oldest = min(requests) if requests else now
            # The window frees up when its oldest request ages out.
            reset_time = oldest + rule.window_ms
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_time_ms=reset_time,
                retry_after_s=max(1, math.ceil((reset_time - now) / 1000)),
                total=len(requests),
                reason=REASON_RATE_LIMITED,
                message="Too many requests",
            )
        requests.append(now)
        requests = requests[-self._config.max_entries_per_key :]
        txn.set(
            collection,
            doc_id,
            {
                "type": rule.limit_type,
                "requests": requests,
                "createdAt": (entry or {}).get("createdAt", now),
                "lastRequest": now,
                "metadata": {
                    "clientIP": client_ip,
                    "userId": user_id,
                    "userAgent": user_agent,
                    "endpoint": endpoint,
                },
                "expiresAt": now + rule.window_ms + self._config.ttl_buffer_ms,
            },
        )
        return RateLimitDecision(
            allowed=True,
            remaining=max(0, rule.max_requests - len(requests)),
            reset_time_ms=min(requests) + rule.window_ms,
            total=len(requests),
        )

    def _failsafe_decision(self, rule: RateLimitRule, now: int) -> RateLimitDecision:
        # No counter survives a store outage across instances, so every type is denied until it recovers.
        increment_counter("rate_limit_failsafe_total")
        if is_privileged_type(rule.limit_type):
            logger.error("rate_limit_failsafe_denied type=%s", rule.limit_type)
            message = "Service temporarily unavailable"
        else:
            logger.warning("rate_limit_failsafe type=%s", rule.limit_type)
            message = "Rate limiting in failsafe mode due to service degradation"
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_time_ms=now + rule.window_ms,
            retry_after_s=math.ceil(rule.window_ms / 1000),
            failsafe_mode=True,
            reason=REASON_FAILSAFE_DENIED,
            message=message,
        )

    async def check_fraud_lockout(self, client_ip: str, user_id: str | None) -> FraudStatus:
        # Store failures propagate so payment callers fail closed.
        entry = await with_store_timeout(
            self._store.get(FRAUD_COLLECTION, self.fraud_key(client_ip, user_id)),
            self._config.store_timeout_ms,
        )
        if entry is None:
            return FraudStatus(locked=False)
        now = epoch_ms(self._time)
        locked_until = entry.get("lockedUntil")
        risk_score = int(entry.get("riskScore", 0))
        if locked_until is not None and now < int(locked_until):
            return FraudStatus(locked=True, risk_score=risk_score, locked_until_ms=int(locked_until))
        return FraudStatus(locked=False, risk_score=risk_score)

    async def record_fraud_activity(
        self,
        client_ip: str,
        user_id: str | None,
        activity_type: str,
        endpoint: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> FraudStatus | None:
        # Best-effort: fraud bookkeeping must never break the request path.
        doc_id = self.fraud_key(client_ip, user_id)

        async def _txn(txn: Transaction) -> FraudStatus:
            now = epoch_ms(self._time)
            entry = await txn.get(FRAUD_COLLECTION, doc_id) or {
                "clientIP": client_ip,
                "userId": user_id,
                "suspiciousActivities": [],
                "riskScore": 0,
                "createdAt": now,
            }
            window_ms = self._fraud.pattern_window_s * 1000
            activities = [
                activity
                for activity in entry.get("suspiciousActivities", [])
                if now - int(activity.get("timestamp", 0)) < window_ms
            ]
            activity = {"type": activity_type, "endpoint": endpoint, "timestamp": now}
            activity.update(details or {})
            activities.append(activity)
            score, patterns = score_fraud_activities(activities, self._fraud, now)
            entry["suspiciousActivities"] = activities
            entry["riskScore"] = score
            entry["patterns"] = patterns
            entry["expiresAt"] = now + FRAUD_RETENTION_S * 1000
            locked_until = entry.get("lockedUntil")
            if score >= 100:
                locked_until = now + self._fraud.lockout_s * 1000
                entry["lockedUntil"] = locked_until
            txn.set(FRAUD_COLLECTION, doc_id, entry)
            return FraudStatus(
                locked=locked_until is not None and now < int(locked_until),
                risk_score=score,
                locked_until_ms=int(locked_until) if locked_until is not None else None,
            )

        try:
            status = await with_store_timeout(
                self._store.run_transaction(_txn, max_attempts=self._config.transaction_max_attempts),
                self._config.store_timeout_ms,
            )
        except DocumentStoreError as exc:
            logger.error("fraud_activity_record_failed activity=%s", activity_type, exc_info=exc)
            return None
        if status.risk_score >= 100:
            increment_counter("payment_fraud_detected_total")
            logger.warning("payment_fraud_detected endpoint=%s risk_score=%s", endpoint, status.risk_score)
        return status

    async def get_rate_limit_status(self, key: str, rule: RateLimitRule) -> dict[str, Any]:
        # Read-only inspection; never appends a request.
        now = epoch_ms(self._time)
        entry = await with_store_timeout(
            self._store.get(rate_limit_collection(rule.limit_type), self.entry_key(key, rule.limit_type)),
            self._config.store_timeout_ms,
        )
        requests = [int(ts) for ts in (entry or {}).get("requests", []) if int(ts) > now - rule.window_ms]
        return {
            "count": len(requests),
            "remaining": max(0, rule.max_requests - len(requests)),
            "resetTime": (min(requests) + rule.window_ms) if requests else now,
            "lastRequest": (entry or {}).get("lastRequest"),
        }

    async def reset_rate_limit(self, key: str, limit_type: str) -> None:
        await with_store_timeout(
            self._store.delete(rate_limit_collection(limit_type), self.entry_key(key, limit_type)),
            self._config.store_timeout_ms,
        )
        logger.info("rate_limit_reset type=%s", limit_type)

    async def get_statistics(self, limit_types: list[str]) -> dict[str, int]:
        stats = {"totalEntries": 0, "fraudDetectionEntries": 0}
        for limit_type in limit_types:
            stats["totalEntries"] += len(await self._store.query(rate_limit_collection(limit_type)))
        stats["fraudDetectionEntries"] = len(await self._store.query(FRAUD_COLLECTION))
        return stats
