from __future__ import annotations

from datetime import datetime, timezone

from productscribe.core.primitives import add_months, billing_period, iso_from_ms, keyed_digest
from productscribe.domain.accounts import (
    QUOTA_NO_SUBSCRIPTION,
    QUOTA_OK,
    QUOTA_SUBSCRIPTION_INACTIVE,
    QUOTA_TRIAL_EXPIRED,
    QUOTA_USAGE_LIMIT_EXCEEDED,
    max_usage_for_plan,
    normalize_subscriber,
    quota_for,
    subscriber_quota,
    trial_quota,
)


def _ms(year: int, month: int, day: int) -> int:
    return int(datetime(year, month, day, 12, tzinfo=timezone.utc).timestamp() * 1000)


def test_add_months_clamps_to_month_end() -> None:
    start = datetime(2024, 1, 31, tzinfo=timezone.utc)
    assert add_months(start, 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert add_months(datetime(2023, 11, 15, tzinfo=timezone.utc), 3) == datetime(2024, 2, 15, tzinfo=timezone.utc)


def test_billing_period_and_iso_rendering() -> None:
    now = _ms(2024, 3, 5)
    assert billing_period(now) == "2024-03"
    assert iso_from_ms(now).startswith("2024-03-05T12:00:00")
    assert iso_from_ms(now).endswith("Z")


def test_keyed_digest_hides_identifier() -> None:
    digest = keyed_digest("api_generate", "198.51.100.7:generate", secret="s1")
    assert "198.51.100.7" not in digest
    assert digest == keyed_digest("api_generate", "198.51.100.7:generate", secret="s1")
    assert digest != keyed_digest("api_generate", "198.51.100.7:generate", secret="s2")


def test_plan_limits() -> None:
    assert max_usage_for_plan("starter") == 50
    assert max_usage_for_plan("professional") == 250
    assert max_usage_for_plan("enterprise") == 1000
    assert max_usage_for_plan("free") == 5


def test_legacy_subscription_type_is_normalized() -> None:
    record = normalize_subscriber({"subscriptionType": "Professional", "monthlyUsage": "3"})
    assert record["planType"] == "professional"
    assert "subscriptionType" not in record
    assert record["maxUsage"] == 250
    assert record["monthlyUsage"] == 3


def test_trial_quota_states() -> None:
    now = _ms(2024, 6, 1)
    active = {"descriptionsRemaining": 2, "descriptionsUsed": 1, "expiresAt": now + 1000}
    assert trial_quota(active, now).code == QUOTA_OK
    assert trial_quota(active, now).max_usage == 3

    expired = {**active, "expiresAt": now - 1}
    assert trial_quota(expired, now).code == QUOTA_TRIAL_EXPIRED

    exhausted = {"descriptionsRemaining": 0, "descriptionsUsed": 3, "expiresAt": now + 1000}
    assert trial_quota(exhausted, now).code == QUOTA_USAGE_LIMIT_EXCEEDED


def test_subscriber_quota_requires_active_subscription() -> None:
    now = _ms(2024, 6, 1)
    base = {
        "planType": "starter",
        "maxUsage": 50,
        "monthlyUsage": 10,
        "isSubscribed": True,
        "subscriptionStatus": "ACTIVE",
        "lastResetPeriod": "2024-06",
    }
    assert subscriber_quota(base, now).allowed is True
    cancelled = {**base, "subscriptionStatus": "cancelled"}
    assert subscriber_quota(cancelled, now).code == QUOTA_SUBSCRIPTION_INACTIVE
    full = {**base, "monthlyUsage": 50}
    assert subscriber_quota(full, now).code == QUOTA_USAGE_LIMIT_EXCEEDED


def test_new_billing_period_resets_usage_lazily() -> None:
    now = _ms(2024, 7, 2)
    record = {
        "planType": "starter",
        "maxUsage": 50,
        "monthlyUsage": 50,
        "isSubscribed": True,
        "subscriptionStatus": "active",
        "lastResetPeriod": "2024-06",
    }
    quota = subscriber_quota(record, now)
    assert quota.allowed is True
    assert quota.current_usage == 0


def test_quota_for_prefers_subscriber_and_handles_unknown_user() -> None:
    now = _ms(2024, 6, 1)
    subscriber = {"planType": "unlocked", "maxUsage": 999_999, "monthlyUsage": 0, "isSubscribed": True}
    trial = {"descriptionsRemaining": 0, "descriptionsUsed": 3}
    assert quota_for(subscriber, trial, now).allowed is True
    assert quota_for(None, None, now).code == QUOTA_NO_SUBSCRIPTION
