from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from productscribe.core.config import PLAN_USAGE_LIMITS
from productscribe.core.primitives import billing_period


# Trials and subscribers live in distinct collections; a user is in at most one of them.
TRIAL_USERS_COLLECTION = "Users"
SUBSCRIBED_USERS_COLLECTION = "users"
DELETED_USERS_COLLECTION = "deleted_users"

PLAN_FREE = "free"
PLAN_UNLOCKED = "unlocked"
FREE_PLAN_MAX_USAGE = 5
UNLOCKED_MAX_USAGE = 999_999
TRIAL_STATUS = "trial"

KIND_TRIAL = "trial"
KIND_SUBSCRIBED = "subscribed"

QUOTA_OK = "OK"
QUOTA_USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
QUOTA_TRIAL_EXPIRED = "TRIAL_EXPIRED"
QUOTA_SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
QUOTA_NO_SUBSCRIPTION = "NO_SUBSCRIPTION"


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    code: str
    kind: str | None
    current_usage: int
    max_usage: int
    plan_type: str

    @property
    def remaining(self) -> int:
        return max(0, self.max_usage - self.current_usage)

    def as_usage(self) -> dict[str, Any]:
        return {
            "currentUsage": self.current_usage,
            "maxUsage": self.max_usage,
            "subscriptionType": self.plan_type,
        }


def max_usage_for_plan(plan_type: str) -> int:
    if plan_type == PLAN_UNLOCKED:
        return UNLOCKED_MAX_USAGE
    if plan_type == PLAN_FREE:
        return FREE_PLAN_MAX_USAGE
    return PLAN_USAGE_LIMITS.get(plan_type, FREE_PLAN_MAX_USAGE)


def plan_type_of(record: Mapping[str, Any]) -> str:
    # Legacy records carry subscriptionType instead of planType.
    plan = record.get("planType") or record.get("subscriptionType") or PLAN_FREE
    return str(plan).lower()


def normalize_subscriber(record: Mapping[str, Any]) -> dict[str, Any]:
    normalized = dict(record)
    plan = plan_type_of(record)
    normalized["planType"] = plan
    normalized.pop("subscriptionType", None)
    if "maxUsage" not in normalized:
        normalized["maxUsage"] = max_usage_for_plan(plan)
    normalized["monthlyUsage"] = int(normalized.get("monthlyUsage") or 0)
    return normalized


def is_paid_plan(plan_type: str) -> bool:
    return plan_type not in (PLAN_FREE, PLAN_UNLOCKED)


def subscription_active(record: Mapping[str, Any]) -> bool:
    status = record.get("subscriptionStatus")
    if not record.get("isSubscribed"):
        return False
    return status is None or str(status).upper() == "ACTIVE"


def effective_monthly_usage(record: Mapping[str, Any], now_ms: int) -> int:
    # A new billing period zeroes paid usage lazily.
    plan = plan_type_of(record)
    usage = int(record.get("monthlyUsage") or 0)
    if plan != PLAN_FREE and record.get("lastResetPeriod") not in (None, billing_period(now_ms)):
        return 0
    return usage


def _iso_to_ms(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    try:
        return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return None


def trial_quota(trial: Mapping[str, Any], now_ms: int) -> QuotaStatus:
    remaining = int(trial.get("descriptionsRemaining") or 0)
    used = int(trial.get("descriptionsUsed") or 0)
    max_usage = used + remaining
    expires_at = _iso_to_ms(trial.get("expiresAt"))
    if expires_at is not None and expires_at <= now_ms:
        return QuotaStatus(False, QUOTA_TRIAL_EXPIRED, KIND_TRIAL, used, max_usage, TRIAL_STATUS)
    if remaining <= 0:
        return QuotaStatus(False, QUOTA_USAGE_LIMIT_EXCEEDED, KIND_TRIAL, used, max_usage, TRIAL_STATUS)
    return QuotaStatus(True, QUOTA_OK, KIND_TRIAL, used, max_usage, TRIAL_STATUS)


def subscriber_quota(record: Mapping[str, Any], now_ms: int) -> QuotaStatus:
    normalized = normalize_subscriber(record)
    plan = normalized["planType"]
    max_usage = int(normalized["maxUsage"])
    usage = effective_monthly_usage(normalized, now_ms)
    if is_paid_plan(plan) and not subscription_active(normalized):
        return QuotaStatus(False, QUOTA_SUBSCRIPTION_INACTIVE, KIND_SUBSCRIBED, usage, max_usage, plan)
    if usage >= max_usage:
        return QuotaStatus(False, QUOTA_USAGE_LIMIT_EXCEEDED, KIND_SUBSCRIBED, usage, max_usage, plan)
    return QuotaStatus(True, QUOTA_OK, KIND_SUBSCRIBED, usage, max_usage, plan)


def quota_for(subscriber: Mapping[str, Any] | None, trial: Mapping[str, Any] | None, now_ms: int) -> QuotaStatus:
    # Subscriber records win when both exist (a half-finished upgrade).
    if subscriber is not None:
        return subscriber_quota(subscriber, now_ms)
    if trial is not None:
        return trial_quota(trial, now_ms)
    return QuotaStatus(False, QUOTA_NO_SUBSCRIPTION, None, 0, 0, "unknown")
