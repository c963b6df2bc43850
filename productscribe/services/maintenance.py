from __future__ import annotations

import logging
from typing import Any, Iterable, Literal

from productscribe.core.config import Settings
from productscribe.core.errors import DocumentStoreError
from productscribe.core.primitives import epoch_ms
from productscribe.persistence.documents import DocumentStore
from productscribe.services.bootstrap import Components
from productscribe.services.policy import build_endpoint_policies, payment_rule
from productscribe.services.rate_limiter import FRAUD_COLLECTION, rate_limit_collection
from productscribe.services.token_replay import USED_TOKENS_COLLECTION


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "purge_expired",
    "cleanup_expired_trials",
    "resolve_idle_alerts",
    "reset_monthly_usage",
    "security_audit",
]


def rate_limit_collections(settings: Settings) -> list[str]:
    # Every sliding-window collection the endpoint policies can write to.
    rules = [policy.rate_limit for policy in build_endpoint_policies(settings).values() if policy.rate_limit]
    rules.append(payment_rule(settings))
    collections = sorted({rate_limit_collection(rule.limit_type) for rule in rules})
    return [*collections, FRAUD_COLLECTION, USED_TOKENS_COLLECTION]


async def purge_expired_documents(
    store: DocumentStore,
    collections: Iterable[str],
    *,
    now_ms: int,
    batch_size: int,
) -> dict[str, int]:
    # One bounded batch per collection per pass; a failing collection does not stop the rest.
    removed: dict[str, int] = {}
    for collection in collections:
        try:
            removed[collection] = await store.purge_expired(collection, now_ms, limit=batch_size)
        except DocumentStoreError as exc:
            logger.error("ttl_purge_failed collection=%s", collection, exc_info=exc)
            removed[collection] = 0
    return removed


async def purge_expired(components: Components) -> dict[str, int]:
    now = epoch_ms(components.time_provider)
    removed = await purge_expired_documents(
        components.store,
        rate_limit_collections(components.settings),
        now_ms=now,
        batch_size=components.settings.cleanup_batch_size,
    )
    removed.update(await components.monitor.cleanup_expired())
    total = sum(removed.values())
    logger.info("ttl_purge_completed removed=%s", total)
    return removed


async def run_cleanup(components: Components) -> dict[str, Any]:
    # Full TTL pass used by the cleanup script.
    removed = await purge_expired(components)
    trials = await components.users.cleanup_expired_trials()
    alerts = await components.monitor.resolve_idle_alerts()
    return {"purged": removed, "expiredTrials": trials, "resolvedAlerts": alerts}


async def run_maintenance_task(task: MaintenanceTask, components: Components) -> Any:
    if task == "purge_expired":
        return await purge_expired(components)
    if task == "cleanup_expired_trials":
        return await components.users.cleanup_expired_trials()
    if task == "resolve_idle_alerts":
        return await components.monitor.resolve_idle_alerts()
    if task == "reset_monthly_usage":
        return await components.users.reset_monthly_usage()
    if task == "security_audit":
        return await components.monitor.perform_security_audit()
    raise ValueError(f"Unknown maintenance task: {task}")
