from __future__ import annotations

from dataclasses import dataclass
import logging

from productscribe.core.config import Settings
from productscribe.core.errors import DocumentStoreError, ProviderConfigError
from productscribe.core.primitives import TimeProvider, epoch_ms
from productscribe.persistence.documents import DocumentStore, MemoryDocumentStore
from productscribe.providers.llm.base import DescriptionModel
from productscribe.providers.llm.factory import get_description_model
from productscribe.providers.payments.base import PaymentProvider
from productscribe.providers.payments.factory import get_payment_provider
from productscribe.services.authenticator import FailSafeAuthenticator, FailSafeConfig
from productscribe.services.email_validation import EmailPolicy
from productscribe.services.identity import FirebaseTokenDecoder, IdentityPolicy, IdentityVerifier, TokenDecoder
from productscribe.services.policy import EndpointPolicy, build_endpoint_policies
from productscribe.services.rate_limiter import DistributedRateLimiter, FraudPolicy, RateLimiterConfig
from productscribe.services.resilience import CircuitBreaker, CircuitBreakerConfig, get_resilience_redis
from productscribe.services.security_monitor import MonitorConfig, SecurityMonitor
from productscribe.services.token_replay import ReplayPolicy, TokenReplayGuard
from productscribe.services.users import LifecycleConfig, UserLifecycleService


logger = logging.getLogger(__name__)

STORE_BREAKER_NAME = "store.auth"


@dataclass
class Components:
    settings: Settings
    store: DocumentStore
    replay_guard: TokenReplayGuard
    rate_limiter: DistributedRateLimiter
    monitor: SecurityMonitor
    identity: IdentityVerifier
    authenticator: FailSafeAuthenticator
    users: UserLifecycleService
    email_policy: EmailPolicy
    policies: dict[str, EndpointPolicy]
    description_model: DescriptionModel
    payment_provider: PaymentProvider
    time_provider: TimeProvider | None = None


def build_store(settings: Settings) -> DocumentStore:
    backend = settings.document_store_backend.lower()
    if backend == "memory":
        return MemoryDocumentStore()
    if backend == "sql":
        # Import lazily so memory-backed processes never build a database engine.
        from productscribe.persistence.db import SessionLocal
        from productscribe.persistence.sql_documents import SqlDocumentStore

        return SqlDocumentStore(SessionLocal)
    raise ProviderConfigError(f"Unsupported document store backend: {backend}")


async def build_components(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    token_decoder: TokenDecoder | None = None,
    description_model: DescriptionModel | None = None,
    payment_provider: PaymentProvider | None = None,
    email_policy: EmailPolicy | None = None,
    time_provider: TimeProvider | None = None,
) -> Components:
    # Leaves first: store -> replay/rate limiter -> monitor -> identity -> authenticator -> lifecycle.
    store = store or build_store(settings)
    replay_guard = TokenReplayGuard(store, ReplayPolicy.from_settings(settings), time_provider=time_provider)
    rate_limiter = DistributedRateLimiter(
        store,
        RateLimiterConfig.from_settings(settings),
        FraudPolicy.from_settings(settings),
        replay_guard=replay_guard,
        time_provider=time_provider,
    )
    monitor = SecurityMonitor(store, MonitorConfig.from_settings(settings), time_provider=time_provider)
    identity = IdentityVerifier(
        token_decoder or FirebaseTokenDecoder(settings),
        IdentityPolicy.from_settings(settings),
        time_provider=time_provider,
    )
    breaker = CircuitBreaker(
        STORE_BREAKER_NAME,
        redis=await get_resilience_redis(),
        config=CircuitBreakerConfig.from_settings(settings),
        time_source=time_provider,
    )
    authenticator = FailSafeAuthenticator(
        store,
        rate_limiter,
        monitor,
        identity,
        replay_guard,
        breaker,
        FailSafeConfig.from_settings(settings),
        time_provider=time_provider,
    )
    email_policy = email_policy or EmailPolicy()
    users = UserLifecycleService(
        store,
        LifecycleConfig.from_settings(settings),
        email_policy=email_policy,
        time_provider=time_provider,
    )
    return Components(
        settings=settings,
        store=store,
        replay_guard=replay_guard,
        rate_limiter=rate_limiter,
        monitor=monitor,
        identity=identity,
        authenticator=authenticator,
        users=users,
        email_policy=email_policy,
        policies=build_endpoint_policies(settings),
        description_model=description_model or get_description_model(),
        payment_provider=payment_provider or get_payment_provider(),
        time_provider=time_provider,
    )


async def shutdown_components(components: Components) -> None:
    # Flush one TTL purge batch, then release the store.
    from productscribe.services.maintenance import purge_expired

    try:
        await purge_expired(components)
    except DocumentStoreError as exc:
        logger.warning("shutdown_purge_failed", exc_info=exc)
    await components.store.close()
    logger.info("components_shutdown at_ms=%s", epoch_ms(components.time_provider))
