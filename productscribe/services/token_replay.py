from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping

from productscribe.core.config import Settings
from productscribe.core.primitives import TimeProvider, epoch_ms, keyed_digest
from productscribe.persistence.documents import DocumentStore, Transaction, with_store_timeout


logger = logging.getLogger(__name__)

USED_TOKENS_COLLECTION = "usedTokens"


@dataclass(frozen=True)
class ReplayPolicy:
    window_s: int
    max_usage: int
    hash_secret: str
    store_timeout_ms: int
    max_attempts: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReplayPolicy":
        return cls(
            window_s=settings.token_replay_window_s,
            max_usage=max(1, settings.token_max_usage),
            hash_secret=settings.hash_secret,
            store_timeout_ms=settings.store_timeout_ms,
            max_attempts=settings.rl_transaction_max_attempts,
        )


@dataclass(frozen=True)
class ReplayDecision:
    allowed: bool
    usage_count: int
    first_used_ms: int
    last_used_ms: int


def token_id_for(claims: Mapping[str, Any]) -> str | None:
    # Prefer the explicit token id; otherwise issued-at scoped to the subject.
    jti = claims.get("jti")
    if jti:
        return str(jti)
    iat = claims.get("iat")
    if iat is None:
        return None
    subject = claims.get("uid") or claims.get("user_id") or claims.get("sub") or "anonymous"
    return f"{subject}:{iat}"


class TokenReplayGuard:
    """Admit each bearer token at most max_usage times per replay window across all instances."""

    def __init__(
        self,
        store: DocumentStore,
        policy: ReplayPolicy,
        *,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._time = time_provider

    def entry_key(self, token_id: str) -> str:
        return keyed_digest("token_replay", token_id, secret=self._policy.hash_secret)

    async def check_and_record(self, token_id: str, *, context_key: str | None = None) -> ReplayDecision:
        # Read, decide and bump usage in one transaction so concurrent replays serialize.
        doc_id = self.entry_key(token_id)
        window_ms = self._policy.window_s * 1000

        async def _txn(txn: Transaction) -> ReplayDecision:
            now = epoch_ms(self._time)
            entry = await txn.get(USED_TOKENS_COLLECTION, doc_id)
            if entry is not None and now - int(entry.get("lastUsed", 0)) < window_ms:
                usage_count = int(entry.get("usageCount", 0))
                if usage_count >= self._policy.max_usage:
                    return ReplayDecision(False, usage_count, int(entry.get("firstUsed", now)), int(entry["lastUsed"]))
                txn.update(
                    USED_TOKENS_COLLECTION,
                    doc_id,
                    {
                        "usageCount": usage_count + 1,
                        "lastUsed": now,
                        "lastContextKey": context_key,
                        "expiresAt": now + window_ms,
                    },
                )
                return ReplayDecision(True, usage_count + 1, int(entry.get("firstUsed", now)), now)
            # First sighting, or the previous window lapsed: start a fresh window.
            txn.set(
                USED_TOKENS_COLLECTION,
                doc_id,
                {
                    "tokenHash": doc_id,
                    "usageCount": 1,
                    "firstUsed": now,
                    "lastUsed": now,
                    "lastContextKey": context_key,
                    "expiresAt": now + window_ms,
                },
            )
            return ReplayDecision(True, 1, now, now)

        decision = await with_store_timeout(
            self._store.run_transaction(_txn, max_attempts=self._policy.max_attempts),
            self._policy.store_timeout_ms,
        )
        if not decision.allowed:
            logger.warning("token_replay_detected usage_count=%s", decision.usage_count)
        return decision
