from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from productscribe.core.config import PLAN_USAGE_LIMITS, Settings
from productscribe.core.errors import EmailValidationError, UserExistsError, UserLifecycleError, UserNotFoundError
from productscribe.core.primitives import TimeProvider, add_months, billing_period, epoch_ms, iso_from_ms, random_hex, utc_from_ms
from productscribe.domain.accounts import (
    DELETED_USERS_COLLECTION,
    KIND_SUBSCRIBED,
    KIND_TRIAL,
    PLAN_FREE,
    PLAN_UNLOCKED,
    QUOTA_NO_SUBSCRIPTION,
    QUOTA_OK,
    SUBSCRIBED_USERS_COLLECTION,
    TRIAL_STATUS,
    TRIAL_USERS_COLLECTION,
    UNLOCKED_MAX_USAGE,
    QuotaStatus,
    max_usage_for_plan,
    normalize_subscriber,
    quota_for,
    subscriber_quota,
    trial_quota,
)
from productscribe.persistence.documents import (
    WRITE_DELETE,
    WRITE_UPDATE,
    DocumentStore,
    FieldFilter,
    Transaction,
    WriteOp,
    with_store_timeout,
)
from productscribe.services.email_validation import EmailPolicy
from productscribe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

ADMIN_ACTIONS = (
    "get_all_users",
    "get_user",
    "reset_usage",
    "reset_subscription",
    "update_user",
    "delete_user",
    "create_test_user",
    "reset_all_usage",
    "sync_user",
    "manual_add_user",
    "manual_unlock",
)

# Fields an operator may set through update_user; roles are managed out of band.
_ADMIN_UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "planType",
        "subscriptionType",
        "maxUsage",
        "monthlyUsage",
        "isSubscribed",
        "subscriptionId",
        "subscriptionStatus",
        "billingCycle",
        "nextBillingDate",
        "status",
    }
)
# Placeholder domains that skip the live email policy for operator-created test records.
_PLACEHOLDER_EMAIL_DOMAINS = ("@example.com", "@unknown.com")
_GET_ALL_USERS_LIMIT = 100


@dataclass(frozen=True)
class LifecycleConfig:
    trial_descriptions: int
    trial_duration_months: int
    store_timeout_ms: int
    max_attempts: int
    batch_size: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "LifecycleConfig":
        return cls(
            trial_descriptions=min(3, max(0, settings.trial_descriptions)),
            trial_duration_months=settings.trial_duration_months,
            store_timeout_ms=settings.store_timeout_ms,
            max_attempts=settings.rl_transaction_max_attempts,
            batch_size=max(1, settings.cleanup_batch_size),
        )


@dataclass(frozen=True)
class UpgradeRequest:
    user_id: str
    email: str
    subscription_id: str
    plan_type: str
    billing_cycle: str = "monthly"
    next_billing_date: str | None = None


@dataclass(frozen=True)
class UpgradeResult:
    user: dict[str, Any]
    created: bool
    idempotent: bool


@dataclass(frozen=True)
class AdminActionResult:
    status_code: int
    body: dict[str, Any]


def _with_id(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {"id": doc_id, **data}


def _clamp_usage(record: dict[str, Any]) -> dict[str, Any]:
    # Keep 0 <= monthlyUsage <= maxUsage for every write path.
    max_usage = max(0, int(record.get("maxUsage") or 0))
    record["maxUsage"] = max_usage
    record["monthlyUsage"] = min(max(0, int(record.get("monthlyUsage") or 0)), max_usage)
    return record


def _map_legacy_plan(fields: dict[str, Any]) -> dict[str, Any]:
    # Admin payloads may still say subscriptionType; persist it as planType.
    if "subscriptionType" in fields:
        legacy = fields.pop("subscriptionType")
        fields.setdefault("planType", str(legacy).lower() if legacy else PLAN_FREE)
    if "planType" in fields and fields["planType"]:
        fields["planType"] = str(fields["planType"]).lower()
    return fields


def _is_placeholder_email(email: str) -> bool:
    lowered = email.strip().lower()
    return lowered.endswith(_PLACEHOLDER_EMAIL_DOMAINS)


class UserLifecycleService:
    """Trials, subscriptions and usage accounting across the trial and subscriber collections."""

    def __init__(
        self,
        store: DocumentStore,
        config: LifecycleConfig,
        *,
        email_policy: EmailPolicy | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._email_policy = email_policy or EmailPolicy()
        self._time = time_provider

    def _now(self) -> int:
        return epoch_ms(self._time)

    async def _run(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        return await with_store_timeout(
            self._store.run_transaction(fn, max_attempts=self._config.max_attempts),
            self._config.store_timeout_ms,
        )

    async def _read(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return await with_store_timeout(self._store.get(collection, doc_id), self._config.store_timeout_ms)

    def _trial_carryover(self, trial: Mapping[str, Any] | None, now: int) -> dict[str, Any]:
        if trial is None:
            return {}
        return {
            "previousStatus": TRIAL_STATUS,
            "trialStartedAt": trial.get("createdAt"),
            "trialEndedAt": iso_from_ms(now),
            "signupIpAddress": trial.get("ipAddress", "unknown"),
        }

    async def get_user_status(self, user_id: str) -> dict[str, Any] | None:
        # Trials are checked first; the two collections never hold the same user.
        trial = await self._read(TRIAL_USERS_COLLECTION, user_id)
        if trial is not None:
            return {
                "exists": True,
                "collection": TRIAL_USERS_COLLECTION,
                "status": trial.get("status") or TRIAL_STATUS,
                "descriptionsRemaining": int(trial.get("descriptionsRemaining") or 0),
            }
        subscriber = await self._read(SUBSCRIBED_USERS_COLLECTION, user_id)
        if subscriber is not None:
            quota = subscriber_quota(subscriber, self._now())
            return {
                "exists": True,
                "collection": SUBSCRIBED_USERS_COLLECTION,
                "status": subscriber.get("status") or quota.plan_type,
                "descriptionsRemaining": quota.remaining,
            }
        return None

    async def create_trial_user(
        self,
        user_id: str,
        email: str,
        *,
        ip_address: str,
        email_verified: bool,
        device_cookie_present: bool = False,
    ) -> dict[str, Any]:
        if not email_verified:
            raise UserLifecycleError("Email verification required")
        if device_cookie_present:
            raise UserExistsError("A trial was already started from this device")

        async def _txn(txn: Transaction) -> dict[str, Any]:
            now = self._now()
            if await txn.get(SUBSCRIBED_USERS_COLLECTION, user_id) is not None:
                raise UserExistsError("User already has a subscription")
            if await txn.get(TRIAL_USERS_COLLECTION, user_id) is not None:
                raise UserExistsError("Trial already exists for this user")
            expires_at = add_months(utc_from_ms(now), self._config.trial_duration_months)
            trial = {
                "userId": user_id,
                "email": email.strip().lower(),
                "ipAddress": ip_address,
                "createdAt": iso_from_ms(now),
                "expiresAt": int(expires_at.timestamp() * 1000),
                "descriptionsRemaining": self._config.trial_descriptions,
                "descriptionsUsed": 0,
                "status": TRIAL_STATUS,
                "emailVerified": True,
            }
            txn.set(TRIAL_USERS_COLLECTION, user_id, trial)
            return trial

        trial = await self._run(_txn)
        increment_counter("trial_users_created_total")
        logger.info("trial_user_created user_id=%s", user_id)
        return trial

    async def upgrade_to_subscription(self, request: UpgradeRequest) -> UpgradeResult:
        plan = request.plan_type.strip().lower()
        if plan not in PLAN_USAGE_LIMITS:
            raise UserLifecycleError("Invalid plan type")

        async def _txn(txn: Transaction) -> UpgradeResult:
            now = self._now()
            existing = await txn.get(SUBSCRIBED_USERS_COLLECTION, request.user_id)
            trial = await txn.get(TRIAL_USERS_COLLECTION, request.user_id)
            if trial is not None:
                txn.delete(TRIAL_USERS_COLLECTION, request.user_id)
            if existing is not None and existing.get("subscriptionId") == request.subscription_id:
                # Replayed webhook: the subscriber record stays exactly as first written.
                return UpgradeResult(user=dict(existing), created=False, idempotent=True)

            stamp = iso_from_ms(now)
            plan_fields = {
                "planType": plan,
                "maxUsage": PLAN_USAGE_LIMITS[plan],
                "subscriptionId": request.subscription_id,
                "subscriptionProvider": "paypal",
                "subscriptionStatus": "active",
                "isSubscribed": True,
                "status": plan,
                "billingCycle": request.billing_cycle or "monthly",
                "nextBillingDate": request.next_billing_date,
                "subscribedAt": stamp,
                "updatedAt": stamp,
            }
            if existing is not None:
                # Plan change keeps usage for the current period.
                record = normalize_subscriber(existing)
                record.update(plan_fields)
                record = _clamp_usage(record)
                txn.set(SUBSCRIBED_USERS_COLLECTION, request.user_id, record)
                return UpgradeResult(user=record, created=False, idempotent=False)

            record = {
                "userId": request.user_id,
                "email": request.email.strip().lower(),
                "monthlyUsage": 0,
                "lastResetPeriod": billing_period(now),
                "createdAt": (trial or {}).get("createdAt") or stamp,
                "previousStatus": None,
                "trialStartedAt": None,
                "trialEndedAt": None,
                **plan_fields,
            }
            record.update(self._trial_carryover(trial, now))
            txn.set(SUBSCRIBED_USERS_COLLECTION, request.user_id, record)
            return UpgradeResult(user=record, created=True, idempotent=False)

        result = await self._run(_txn)
        if not result.idempotent:
            increment_counter(f"subscription_upgrades_total.{plan}")
        logger.info(
            "subscription_upgrade user_id=%s plan=%s created=%s idempotent=%s",
            request.user_id,
            plan,
            result.created,
            result.idempotent,
        )
        return result

    async def check_quota(self, user_id: str) -> QuotaStatus:
        subscriber = await self._read(SUBSCRIBED_USERS_COLLECTION, user_id)
        trial = None if subscriber is not None else await self._read(TRIAL_USERS_COLLECTION, user_id)
        return quota_for(subscriber, trial, self._now())

    async def consume_usage(self, user_id: str) -> QuotaStatus:
        """Reserve one description for the user before generation.

        Subscribers increment monthlyUsage (rolling over to a new billing period when needed);
        trials decrement descriptionsRemaining. A refused reservation writes nothing.
        """

        async def _txn(txn: Transaction) -> QuotaStatus:
            now = self._now()
            stamp = iso_from_ms(now)
            subscriber = await txn.get(SUBSCRIBED_USERS_COLLECTION, user_id)
            if subscriber is not None:
                record = normalize_subscriber(subscriber)
                quota = subscriber_quota(record, now)
                if not quota.allowed:
                    return quota
                period = billing_period(now)
                if record.get("lastResetPeriod") != period:
                    record["lastReset"] = stamp
                record.update(
                    {
                        "monthlyUsage": quota.current_usage + 1,
                        "lastResetPeriod": period,
                        "lastDescriptionGeneratedAt": stamp,
                        "updatedAt": stamp,
                    }
                )
                txn.set(SUBSCRIBED_USERS_COLLECTION, user_id, record)
                return QuotaStatus(True, QUOTA_OK, KIND_SUBSCRIBED, quota.current_usage + 1, quota.max_usage, quota.plan_type)
            trial = await txn.get(TRIAL_USERS_COLLECTION, user_id)
            if trial is not None:
                quota = trial_quota(trial, now)
                if not quota.allowed:
                    return quota
                remaining = int(trial.get("descriptionsRemaining") or 0)
                txn.update(
                    TRIAL_USERS_COLLECTION,
                    user_id,
                    {
                        "descriptionsRemaining": remaining - 1,
                        "descriptionsUsed": quota.current_usage + 1,
                        "lastDescriptionGeneratedAt": stamp,
                    },
                )
                return QuotaStatus(True, QUOTA_OK, KIND_TRIAL, quota.current_usage + 1, quota.max_usage, quota.plan_type)
            return QuotaStatus(False, QUOTA_NO_SUBSCRIPTION, None, 0, 0, "unknown")

        quota = await self._run(_txn)
        if quota.allowed:
            increment_counter("usage_reserved_total")
        else:
            logger.info("usage_reservation_refused user_id=%s code=%s", user_id, quota.code)
        return quota

    async def release_usage(self, user_id: str, kind: str | None) -> None:
        # Return a reservation after a failed generation.
        async def _txn(txn: Transaction) -> None:
            if kind == KIND_SUBSCRIBED:
                record = await txn.get(SUBSCRIBED_USERS_COLLECTION, user_id)
                if record is not None and int(record.get("monthlyUsage") or 0) > 0:
                    txn.update(
                        SUBSCRIBED_USERS_COLLECTION, user_id, {"monthlyUsage": int(record["monthlyUsage"]) - 1}
                    )
            elif kind == KIND_TRIAL:
                record = await txn.get(TRIAL_USERS_COLLECTION, user_id)
                if record is not None and int(record.get("descriptionsUsed") or 0) > 0:
                    txn.update(
                        TRIAL_USERS_COLLECTION,
                        user_id,
                        {
                            "descriptionsRemaining": int(record.get("descriptionsRemaining") or 0) + 1,
                            "descriptionsUsed": int(record["descriptionsUsed"]) - 1,
                        },
                    )

        await self._run(_txn)
        increment_counter("usage_released_total")
        logger.info("usage_released user_id=%s kind=%s", user_id, kind)

    async def reset_monthly_usage(self) -> int:
        now = self._now()
        stamp = iso_from_ms(now)
        period = billing_period(now)
        documents = await self._store.query(SUBSCRIBED_USERS_COLLECTION)
        reset = 0
        for start in range(0, len(documents), self._config.batch_size):
            chunk = documents[start : start + self._config.batch_size]
            await self._store.batch(
                [
                    WriteOp(
                        WRITE_UPDATE,
                        SUBSCRIBED_USERS_COLLECTION,
                        doc.doc_id,
                        {"monthlyUsage": 0, "lastReset": stamp, "lastResetPeriod": period, "updatedAt": stamp},
                    )
                    for doc in chunk
                ]
            )
            reset += len(chunk)
        logger.info("monthly_usage_reset count=%s period=%s", reset, period)
        return reset

    async def cleanup_expired_trials(self) -> int:
        now = self._now()
        expired = await self._store.query(
            TRIAL_USERS_COLLECTION,
            filters=[FieldFilter("expiresAt", "<=", now)],
            limit=self._config.batch_size,
        )
        if expired:
            await self._store.batch([WriteOp(WRITE_DELETE, TRIAL_USERS_COLLECTION, doc.doc_id) for doc in expired])
        logger.info("expired_trials_deleted count=%s", len(expired))
        return len(expired)

    async def _validated_email(self, email: str | None) -> str:
        if email and _is_placeholder_email(email):
            return email.strip().lower()
        return await self._email_policy.require(email)

    async def find_subscriber_by_email(self, email: str) -> tuple[str, dict[str, Any]] | None:
        matches = await self._store.query(
            SUBSCRIBED_USERS_COLLECTION, filters=[FieldFilter("email", "==", email)], limit=1
        )
        if not matches:
            return None
        return matches[0].doc_id, dict(matches[0].data)

    async def run_admin_action(
        self,
        action: str,
        *,
        user_id: str | None = None,
        user_data: Mapping[str, Any] | None = None,
    ) -> AdminActionResult:
        data = dict(user_data or {})
        try:
            if action == "get_all_users":
                return await self._get_all_users()
            if action == "reset_all_usage":
                count = await self.reset_monthly_usage()
                return AdminActionResult(
                    200,
                    {
                        "success": True,
                        "message": f"Usage reset for {count} users",
                        "resetCount": count,
                        "timestamp": iso_from_ms(self._now()),
                    },
                )
            if action == "create_test_user":
                return await self._create_test_user(data)
            if action == "manual_add_user":
                return await self._manual_add_user(data)
            if action == "manual_unlock":
                return await self._manual_unlock(data)
            if action not in ADMIN_ACTIONS:
                return AdminActionResult(400, {"success": False, "error": "Invalid action"})
            if not user_id:
                return AdminActionResult(400, {"success": False, "error": "userId is required"})
            if action == "get_user":
                return await self._get_user(user_id)
            if action == "reset_usage":
                return await self._reset_usage(user_id)
            if action == "reset_subscription":
                return await self._reset_subscription(user_id)
            if action == "update_user":
                return await self._update_user(user_id, data)
            if action == "delete_user":
                return await self._delete_user(user_id)
            return await self._sync_user(user_id, data)
        except EmailValidationError as exc:
            logger.info("admin_email_rejected action=%s kind=%s", action, exc.kind)
            return AdminActionResult(
                400, {"success": False, "error": f"Email validation failed: {exc}", "code": exc.kind}
            )
        except UserNotFoundError as exc:
            return AdminActionResult(404, {"success": False, "message": str(exc)})

    async def _get_all_users(self) -> AdminActionResult:
        documents = await self._store.query(SUBSCRIBED_USERS_COLLECTION, limit=_GET_ALL_USERS_LIMIT)
        users = [_with_id(doc.doc_id, doc.data) for doc in documents]
        return AdminActionResult(200, {"users": users, "total": len(users)})

    async def _get_user(self, user_id: str) -> AdminActionResult:
        record = await self._read(SUBSCRIBED_USERS_COLLECTION, user_id)
        if record is None:
            return AdminActionResult(404, {"user": None, "found": False})
        return AdminActionResult(200, {"user": _with_id(user_id, record), "found": True})

    async def _reset_usage(self, user_id: str) -> AdminActionResult:
        async def _txn(txn: Transaction) -> dict[str, Any]:
            record = await txn.get(SUBSCRIBED_USERS_COLLECTION, user_id)
            if record is None:
                raise UserNotFoundError(f"User {user_id} not found")
            now = self._now()
            record.update(
                {
                    "monthlyUsage": 0,
                    "lastReset": iso_from_ms(now),
                    "lastResetPeriod": billing_period(now),
                    "updatedAt": iso_from_ms(now),
                }
            )
            txn.set(SUBSCRIBED_USERS_COLLECTION, user_id, record)
            return record

        record = await self._run(_txn)
        logger.info("admin_usage_reset user_id=%s", user_id)
        return AdminActionResult(
            200, {"success": True, "message": f"Usage reset for user {user_id}", "user": _with_id(user_id, record)}
        )

    async def _upsert_subscriber(
        self,
        user_id: str,
        changes: dict[str, Any],
        defaults: dict[str, Any],
    ) -> dict[str, Any]:
        # Creating a subscriber record retires any trial for the same user.
        async def _txn(txn: Transaction) -> dict[str, Any]:
            now = self._now()
            stamp = iso_from_ms(now)
            existing = await txn.get(SUBSCRIBED_USERS_COLLECTION, user_id)
            if existing is not None:
                record = normalize_subscriber(existing)
            else:
                trial = await txn.get(TRIAL_USERS_COLLECTION, user_id)
                if trial is not None:
                    txn.delete(TRIAL_USERS_COLLECTION, user_id)
                record = {
                    "userId": user_id,
                    "email": (trial or {}).get("email", "unknown@example.com"),
                    "planType": PLAN_FREE,
                    "monthlyUsage": 0,
                    "maxUsage": max_usage_for_plan(PLAN_FREE),
                    "isSubscribed": False,
                    "createdAt": stamp,
                    **defaults,
                }
                record.update(self._trial_carryover(trial, now))
            record.update(changes)
            record["updatedAt"] = stamp
            record = _clamp_usage(normalize_subscriber(record))
            txn.set(SUBSCRIBED_USERS_COLLECTION, user_id, record)
            return record

        return await self._run(_txn)

    async def _reset_subscription(self, user_id: str) -> AdminActionResult:
        now = self._now()
        record = await self._upsert_subscriber(
            user_id,
            {
                "isSubscribed": False,
                "planType": PLAN_FREE,
                "maxUsage": max_usage_for_plan(PLAN_FREE),
                "subscriptionId": None,
                "subscriptionStatus": None,
                "status": PLAN_FREE,
                "subscriptionReset": iso_from_ms(now),
            },
            {},
        )
        logger.info("admin_subscription_reset user_id=%s", user_id)
        return AdminActionResult(
            200,
            {"success": True, "message": f"Subscription reset for user {user_id}", "user": _with_id(user_id, record)},
        )

    async def _update_user(self, user_id: str, data: dict[str, Any]) -> AdminActionResult:
        changes = _map_legacy_plan({key: value for key, value in data.items() if key in _ADMIN_UPDATABLE_FIELDS})
        if "email" in changes:
            changes["email"] = await self._validated_email(changes.get("email"))
        if "planType" in changes and "maxUsage" not in changes:
            changes["maxUsage"] = max_usage_for_plan(changes["planType"])
        record = await self._upsert_subscriber(user_id, changes, {})
        logger.info("admin_user_updated user_id=%s fields=%s", user_id, ",".join(sorted(changes)))
        return AdminActionResult(
            200, {"success": True, "message": f"User {user_id} updated", "user": _with_id(user_id, record)}
        )

    async def _delete_user(self, user_id: str) -> AdminActionResult:
        async def _txn(txn: Transaction) -> bool:
            record = await txn.get(SUBSCRIBED_USERS_COLLECTION, user_id)
            if record is None:
                return False
            archived = dict(record)
            archived.update({"deletedAt": iso_from_ms(self._now()), "deletedBy": "admin"})
            txn.set(DELETED_USERS_COLLECTION, user_id, archived)
            txn.delete(SUBSCRIBED_USERS_COLLECTION, user_id)
            return True

        existed = await self._run(_txn)
        logger.info("admin_user_deleted user_id=%s existed=%s", user_id, existed)
        return AdminActionResult(
            200,
            {
                "success": True,
                "message": f"User {user_id} {'deleted and archived' if existed else 'not found'}",
                "existed": existed,
            },
        )

    async def _sync_user(self, user_id: str, data: dict[str, Any]) -> AdminActionResult:
        changes = _map_legacy_plan({key: value for key, value in data.items() if key in _ADMIN_UPDATABLE_FIELDS})
        if changes.get("email"):
            changes["email"] = await self._validated_email(changes["email"])
        plan = changes.get("planType") or PLAN_FREE
        changes.setdefault("planType", plan)
        changes.setdefault("maxUsage", max_usage_for_plan(plan))
        changes.setdefault("isSubscribed", False)
        now = self._now()
        changes.update({"syncedFromClient": True, "syncedAt": iso_from_ms(now), "lastActive": iso_from_ms(now)})
        record = await self._upsert_subscriber(user_id, changes, {"email": "subscriber@unknown.com"})
        return AdminActionResult(
            200,
            {"success": True, "message": f"User {user_id} synced successfully", "user": _with_id(user_id, record)},
        )

    def _manual_fields(self, data: dict[str, Any], default_plan: str) -> dict[str, Any]:
        fields = _map_legacy_plan(
            {key: data[key] for key in ("planType", "subscriptionType", "maxUsage", "monthlyUsage") if key in data}
        )
        plan = fields.get("planType") or default_plan
        fields["planType"] = plan
        fields.setdefault("maxUsage", max_usage_for_plan(plan))
        fields.setdefault("monthlyUsage", 0)
        return fields

    async def _create_test_user(self, data: dict[str, Any]) -> AdminActionResult:
        now = self._now()
        user_id = f"test-{now}-{random_hex(3)}"
        email = await self._validated_email(data.get("email") or f"{user_id}@example.com")
        record = _clamp_usage(
            {
                "userId": user_id,
                "email": email,
                **self._manual_fields(data, "starter"),
                "isSubscribed": True,
                "subscriptionStatus": "active",
                "subscriptionId": f"test-sub-{now}",
                "isTestUser": True,
                "lastResetPeriod": billing_period(now),
                "createdAt": iso_from_ms(now),
                "updatedAt": iso_from_ms(now),
            }
        )
        await with_store_timeout(
            self._store.set(SUBSCRIBED_USERS_COLLECTION, user_id, record), self._config.store_timeout_ms
        )
        logger.info("admin_test_user_created user_id=%s", user_id)
        return AdminActionResult(
            200, {"success": True, "message": f"Test user {user_id} created", "user": _with_id(user_id, record)}
        )

    async def _manual_add_user(self, data: dict[str, Any]) -> AdminActionResult:
        email = await self._validated_email(data.get("email") or "manual@unknown.com")
        now = self._now()
        fields = self._manual_fields(data, "starter")
        fields.update(
            {
                "email": email,
                "isSubscribed": data.get("isSubscribed") is not False,
                "subscriptionStatus": "active",
                "manuallyAdded": True,
                "lastActive": iso_from_ms(now),
            }
        )
        found = await self.find_subscriber_by_email(email)
        if found is not None:
            user_id, _ = found
            if data.get("subscriptionId"):
                fields["subscriptionId"] = data["subscriptionId"]
            record = await self._upsert_subscriber(user_id, fields, {})
            message = f"User {email} updated successfully (existing user)"
        else:
            user_id = f"manual_{now}_{random_hex(3)}"
            fields["subscriptionId"] = data.get("subscriptionId") or f"manual-{now}"
            fields["lastResetPeriod"] = billing_period(now)
            record = await self._upsert_subscriber(user_id, fields, {})
            message = f"User {email} added successfully (new user)"
        logger.info("admin_manual_add user_id=%s", user_id)
        return AdminActionResult(200, {"success": True, "message": message, "user": _with_id(user_id, record)})

    async def _manual_unlock(self, data: dict[str, Any]) -> AdminActionResult:
        if not data.get("email"):
            return AdminActionResult(400, {"success": False, "error": "Email is required"})
        email = await self._email_policy.require(str(data["email"]).strip().lower())
        fields = {
            "email": email,
            "planType": PLAN_UNLOCKED,
            "maxUsage": UNLOCKED_MAX_USAGE,
            "isSubscribed": True,
            "manuallyUnlocked": True,
        }
        found = await self.find_subscriber_by_email(email)
        if found is not None:
            user_id, _ = found
            message = f"{email} unlocked with unlimited access (updated existing user)"
        else:
            user_id = f"unlocked_{self._now()}_{random_hex(3)}"
            message = f"{email} unlocked with unlimited access (new user)"
        record = await self._upsert_subscriber(user_id, fields, {})
        logger.info("admin_manual_unlock user_id=%s", user_id)
        return AdminActionResult(200, {"success": True, "message": message, "user": _with_id(user_id, record)})
