from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from productscribe.core.config import Settings
from productscribe.core.errors import DocumentStoreError
from productscribe.core.primitives import TimeProvider, epoch_ms, generate_id, iso_from_ms, keyed_digest, random_hex
from productscribe.persistence.documents import (
    DocumentStore,
    FieldFilter,
    Transaction,
    with_store_timeout,
)
from productscribe.services.audit import sanitize_metadata
from productscribe.services.rate_limiter import DAY_S
from productscribe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

COLLECTION_PREFIX = "security_monitoring"
EVENTS_COLLECTION = f"{COLLECTION_PREFIX}_events"
EVENT_COUNTS_COLLECTION = f"{COLLECTION_PREFIX}_event_counts"
ALERTS_COLLECTION = f"{COLLECTION_PREFIX}_alert_history"
THREAT_LEVELS_COLLECTION = f"{COLLECTION_PREFIX}_threat_levels"
MONITOR_COLLECTIONS = (EVENTS_COLLECTION, EVENT_COUNTS_COLLECTION, ALERTS_COLLECTION, THREAT_LEVELS_COLLECTION)

SEVERITY_LOW = "LOW"
SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_HIGH = "HIGH"
SEVERITY_CRITICAL = "CRITICAL"

# Canonical event families; the specific cause travels in the payload as "reason".
EVENT_FAILED_AUTH = "failed_auth"
EVENT_SUSPICIOUS_ACTIVITY = "suspicious_activity"
EVENT_WEBHOOK_ABUSE = "webhook_abuse"

THREAT_LOW = "LOW"
THREAT_MEDIUM = "MEDIUM"
THREAT_HIGH = "HIGH"
THREAT_CRITICAL = "CRITICAL"

# Event retention by criticality.
RETENTION_CRITICAL_S = 90 * DAY_S
RETENTION_AUTH_S = 30 * DAY_S
RETENTION_RATE_LIMIT_S = 7 * DAY_S
RETENTION_GENERAL_S = DAY_S

EVENT_COUNT_TTL_S = 7 * DAY_S
ALERT_TTL_S = 30 * DAY_S
THREAT_TTL_S = DAY_S
HIGH_THREAT_SCORE = 50

# First matching fragment wins, so the more specific fragments come first.
_THREAT_SCORES: tuple[tuple[str, int], ...] = (
    ("token_replay", 30),
    ("payment_fraud", 40),
    ("webhook_abuse", 20),
    ("critical", 50),
    ("suspicious", 25),
    ("failed_auth", 15),
    ("auth_failure", 15),
    ("rate_limit", 10),
)
_DEFAULT_THREAT_SCORE = 5


@dataclass(frozen=True)
class MonitorConfig:
    hash_secret: str
    short_window_s: int
    medium_window_s: int
    long_window_s: int
    max_events_per_entry: int
    alert_idle_resolve_s: int
    failed_auth_threshold: int
    rate_limit_threshold: int
    suspicious_threshold: int
    critical_threshold: int
    store_timeout_ms: int
    cleanup_batch_size: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitorConfig":
        return cls(
            hash_secret=settings.hash_secret,
            short_window_s=settings.monitor_short_window_s,
            medium_window_s=settings.monitor_medium_window_s,
            long_window_s=settings.monitor_long_window_s,
            max_events_per_entry=max(2, settings.monitor_max_events_per_entry),
            alert_idle_resolve_s=settings.monitor_alert_idle_resolve_s,
            failed_auth_threshold=settings.monitor_failed_auth_threshold,
            rate_limit_threshold=settings.monitor_rate_limit_threshold,
            suspicious_threshold=settings.monitor_suspicious_threshold,
            critical_threshold=settings.monitor_critical_threshold,
            store_timeout_ms=settings.store_timeout_ms,
            cleanup_batch_size=settings.cleanup_batch_size,
        )


@dataclass(frozen=True)
class SecurityEvent:
    event_type: str
    severity: str = SEVERITY_LOW
    client_ip: str | None = None
    user_id: str | None = None
    endpoint: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecordedEvent:
    event_id: str
    event_count: int
    alert_level: str | None
    alert_id: str | None
    threat_score: int
    threat_level: str


def retention_for(event_type: str) -> int:
    lowered = event_type.lower()
    if any(marker in lowered for marker in ("fraud", "replay", "critical")):
        return RETENTION_CRITICAL_S
    if "auth" in lowered:
        return RETENTION_AUTH_S
    if "rate_limit" in lowered:
        return RETENTION_RATE_LIMIT_S
    return RETENTION_GENERAL_S


def threat_score_for(event_type: str, severity: str = SEVERITY_LOW) -> int:
    lowered = event_type.lower()
    for fragment, score in _THREAT_SCORES:
        if fragment in lowered:
            return score
    if severity == SEVERITY_CRITICAL:
        return 50
    return _DEFAULT_THREAT_SCORE


def categorize_threat(score: int) -> str:
    if score >= 100:
        return THREAT_CRITICAL
    if score >= 50:
        return THREAT_HIGH
    if score >= 25:
        return THREAT_MEDIUM
    return THREAT_LOW


def alert_level_for(event: SecurityEvent, recent_count: int, config: MonitorConfig) -> str | None:
    """Alert level for an event given how many matching events landed in the short window.

    Later rules override earlier ones, so a critical event is always reported as CRITICAL.
    """
    lowered = event.event_type.lower()
    level: str | None = None
    if "failed_auth" in lowered and recent_count >= config.failed_auth_threshold:
        level = SEVERITY_MEDIUM
    if "rate_limit" in lowered and recent_count >= config.rate_limit_threshold:
        level = SEVERITY_HIGH
    if "suspicious" in lowered and recent_count >= config.suspicious_threshold:
        level = SEVERITY_HIGH
    is_critical = "critical" in lowered or event.severity == SEVERITY_CRITICAL
    if is_critical and recent_count >= config.critical_threshold:
        level = SEVERITY_CRITICAL
    return level


class SecurityMonitor:
    """Aggregates security events into per-identifier counts, alerts and threat scores."""

    def __init__(
        self,
        store: DocumentStore,
        config: MonitorConfig,
        *,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._time = time_provider

    @property
    def config(self) -> MonitorConfig:
        return self._config

    def event_key(self, event_type: str, client_ip: str | None) -> str:
        return keyed_digest(event_type, client_ip or "unknown", secret=self._config.hash_secret)

    def threat_key(self, identifier: str) -> str:
        return keyed_digest("threat", identifier, secret=self._config.hash_secret)

    async def record_security_event(self, event: SecurityEvent) -> RecordedEvent | None:
        # Count, alert and threat updates commit together; failures are logged, never raised.
        payload = sanitize_metadata(
            {
                "clientIP": event.client_ip,
                "userId": event.user_id,
                "endpoint": event.endpoint,
                **event.details,
            }
        )
        event_key = self.event_key(event.event_type, event.client_ip)
        identifier = event.client_ip or event.user_id or "unknown"
        threat_key = self.threat_key(identifier)

        async def _txn(txn: Transaction) -> RecordedEvent:
            now = epoch_ms(self._time)
            counts = await txn.get(EVENT_COUNTS_COLLECTION, event_key) or {
                "eventType": event.event_type,
                "clientIP": event.client_ip or "unknown",
                "events": [],
                "createdAt": now,
            }
            threat = await txn.get(THREAT_LEVELS_COLLECTION, threat_key) or {
                "identifier": identifier,
                "threatScore": 0,
                "recentEvents": [],
                "createdAt": now,
            }

            cutoff = now - self._config.long_window_s * 1000
            events = [item for item in counts.get("events", []) if int(item.get("timestamp", 0)) > cutoff]
            events.append({"timestamp": now, "severity": event.severity, "data": payload})
            if len(events) > self._config.max_events_per_entry:
                # Keep the most recent half so bursts do not grow the entry without bound.
                events = events[-(self._config.max_events_per_entry // 2) :]
            counts.update(
                {
                    "events": events,
                    "eventCount": len(events),
                    "lastUpdated": now,
                    "expiresAt": now + EVENT_COUNT_TTL_S * 1000,
                }
            )
            txn.set(EVENT_COUNTS_COLLECTION, event_key, counts)

            short_cutoff = now - self._config.short_window_s * 1000
            recent_count = sum(1 for item in events if int(item.get("timestamp", 0)) > short_cutoff)
            level = alert_level_for(event, recent_count, self._config)
            alert_id: str | None = None
            if level is not None:
                alert_id = generate_id("alert", now)
                txn.set(
                    ALERTS_COLLECTION,
                    alert_id,
                    {
                        "alertId": alert_id,
                        "eventType": event.event_type,
                        "eventKey": event_key,
                        "alertLevel": level,
                        "eventCount": recent_count,
                        "clientIP": event.client_ip,
                        "userId": event.user_id,
                        "endpoint": event.endpoint,
                        "timestamp": now,
                        "resolved": False,
                        "expiresAt": now + ALERT_TTL_S * 1000,
                    },
                )

            threat_cutoff = now - THREAT_TTL_S * 1000
            recent_events = [
                item for item in threat.get("recentEvents", []) if int(item.get("timestamp", 0)) > threat_cutoff
            ]
            recent_events.append(
                {
                    "eventType": event.event_type,
                    "timestamp": now,
                    "score": threat_score_for(event.event_type, event.severity),
                }
            )
            threat_score = sum(int(item.get("score", 0)) for item in recent_events)
            threat_level = categorize_threat(threat_score)
            threat.update(
                {
                    "recentEvents": recent_events,
                    "threatScore": threat_score,
                    "threatLevel": threat_level,
                    "lastUpdated": now,
                    "expiresAt": now + THREAT_TTL_S * 1000,
                }
            )
            txn.set(THREAT_LEVELS_COLLECTION, threat_key, threat)

            event_id = random_hex(16)
            retention_s = RETENTION_CRITICAL_S if event.severity == SEVERITY_CRITICAL else retention_for(event.event_type)
            txn.set(
                EVENTS_COLLECTION,
                event_id,
                {
                    "eventId": event_id,
                    "eventType": event.event_type,
                    "severity": event.severity,
                    "timestamp": now,
                    "payload": payload,
                    "expiresAt": now + retention_s * 1000,
                },
            )
            return RecordedEvent(event_id, recent_count, level, alert_id, threat_score, threat_level)

        try:
            recorded = await with_store_timeout(
                self._store.run_transaction(_txn),
                self._config.store_timeout_ms,
            )
        except DocumentStoreError as exc:
            logger.error("security_event_record_failed event_type=%s", event.event_type, exc_info=exc)
            increment_counter("security_event_record_failed_total")
            return None

        increment_counter(f"security_events_total.{event.severity.lower()}")
        if recorded.alert_level is not None:
            log = logger.error if recorded.alert_level == SEVERITY_CRITICAL else logger.warning
            log(
                "security_alert_triggered alert_id=%s event_type=%s level=%s count=%s",
                recorded.alert_id,
                event.event_type,
                recorded.alert_level,
                recorded.event_count,
            )
        return recorded

    async def count_recent_events(self, event_type: str, client_ip: str | None, *, window_s: int | None = None) -> int:
        now = epoch_ms(self._time)
        cutoff = now - (window_s or self._config.short_window_s) * 1000
        entry = await self._store.get(EVENT_COUNTS_COLLECTION, self.event_key(event_type, client_ip))
        if entry is None:
            return 0
        return sum(1 for item in entry.get("events", []) if int(item.get("timestamp", 0)) > cutoff)

    async def check_alert_thresholds(self, event: SecurityEvent) -> str | None:
        # Read-only evaluation against the stored short-window count.
        count = await self.count_recent_events(event.event_type, event.client_ip)
        return alert_level_for(event, count, self._config)

    async def update_threat_level(self, identifier: str, event_type: str, severity: str = SEVERITY_LOW) -> dict[str, Any]:
        # Standalone threat bump for callers that have no event-count context.
        threat_key = self.threat_key(identifier)

        async def _txn(txn: Transaction) -> dict[str, Any]:
            now = epoch_ms(self._time)
            threat = await txn.get(THREAT_LEVELS_COLLECTION, threat_key) or {
                "identifier": identifier,
                "recentEvents": [],
                "createdAt": now,
            }
            cutoff = now - THREAT_TTL_S * 1000
            recent_events = [
                item for item in threat.get("recentEvents", []) if int(item.get("timestamp", 0)) > cutoff
            ]
            recent_events.append(
                {"eventType": event_type, "timestamp": now, "score": threat_score_for(event_type, severity)}
            )
            score = sum(int(item.get("score", 0)) for item in recent_events)
            threat.update(
                {
                    "recentEvents": recent_events,
                    "threatScore": score,
                    "threatLevel": categorize_threat(score),
                    "lastUpdated": now,
                    "expiresAt": now + THREAT_TTL_S * 1000,
                }
            )
            txn.set(THREAT_LEVELS_COLLECTION, threat_key, threat)
            return {"identifier": identifier, "threatScore": score, "threatLevel": categorize_threat(score)}

        return await with_store_timeout(self._store.run_transaction(_txn), self._config.store_timeout_ms)

    async def get_threat_level(self, identifier: str) -> dict[str, Any]:
        now = epoch_ms(self._time)
        threat = await self._store.get(THREAT_LEVELS_COLLECTION, self.threat_key(identifier))
        if threat is None:
            return {"identifier": identifier, "threatScore": 0, "threatLevel": THREAT_LOW, "recentEvents": 0}
        cutoff = now - THREAT_TTL_S * 1000
        recent = [item for item in threat.get("recentEvents", []) if int(item.get("timestamp", 0)) > cutoff]
        score = sum(int(item.get("score", 0)) for item in recent)
        return {
            "identifier": identifier,
            "threatScore": score,
            "threatLevel": categorize_threat(score),
            "recentEvents": len(recent),
            "lastUpdated": threat.get("lastUpdated"),
        }

    async def get_security_statistics(self, *, window_s: int | None = None) -> dict[str, Any]:
        now = epoch_ms(self._time)
        since = now - (window_s or self._config.long_window_s) * 1000
        try:
            event_entries = await self._store.query(EVENT_COUNTS_COLLECTION)
            active_alerts = await self._store.query(ALERTS_COLLECTION, filters=[FieldFilter("resolved", "==", False)])
            high_threats = await self._store.query(
                THREAT_LEVELS_COLLECTION, filters=[FieldFilter("threatScore", ">=", HIGH_THREAT_SCORE)]
            )
            critical_events = await self._store.query(
                EVENTS_COLLECTION,
                filters=[FieldFilter("severity", "==", SEVERITY_CRITICAL), FieldFilter("timestamp", ">=", since)],
            )
        except DocumentStoreError as exc:
            logger.error("security_statistics_failed", exc_info=exc)
            return {
                "totalEvents": 0,
                "activeAlerts": 0,
                "highThreatIdentifiers": 0,
                "recentCriticalEvents": 0,
                "error": "stats_unavailable",
            }
        return {
            "totalEvents": sum(int(doc.data.get("eventCount", 0)) for doc in event_entries),
            "eventEntries": len(event_entries),
            "activeAlerts": len(active_alerts),
            "highThreatIdentifiers": len(high_threats),
            "recentCriticalEvents": len(critical_events),
        }

    async def analyze_threat_patterns(self) -> dict[str, Any]:
        try:
            docs = await self._store.query(
                THREAT_LEVELS_COLLECTION,
                filters=[FieldFilter("threatScore", ">=", HIGH_THREAT_SCORE)],
                order_by="threatScore",
                descending=True,
                limit=10,
            )
        except DocumentStoreError as exc:
            logger.error("threat_pattern_analysis_failed", exc_info=exc)
            return {"highThreatCount": 0, "topThreats": [], "commonEventTypes": {}, "error": "analysis_failed"}
        common: dict[str, int] = {}
        top: list[dict[str, Any]] = []
        for doc in docs:
            top.append(
                {
                    "identifier": doc.data.get("identifier"),
                    "threatScore": doc.data.get("threatScore"),
                    "lastUpdated": doc.data.get("lastUpdated"),
                }
            )
            for item in doc.data.get("recentEvents", []):
                event_type = str(item.get("eventType"))
                common[event_type] = common.get(event_type, 0) + 1
        return {"highThreatCount": len(docs), "topThreats": top, "commonEventTypes": common}

    async def perform_security_audit(self) -> dict[str, Any]:
        now = epoch_ms(self._time)
        statistics = await self.get_security_statistics()
        patterns = await self.analyze_threat_patterns()
        recommendations: list[str] = []
        if statistics.get("activeAlerts", 0) > 10:
            recommendations.append("High number of active alerts - review alert thresholds")
        if statistics.get("highThreatIdentifiers", 0) > 5:
            recommendations.append("Multiple high-threat identifiers detected - consider IP blocking")
        if statistics.get("recentCriticalEvents", 0) > 0:
            recommendations.append("Critical security events recorded - review the security event log")
        audit = {
            "timestamp": iso_from_ms(now),
            "statistics": statistics,
            "threatAnalysis": patterns,
            "recommendations": recommendations,
        }
        logger.info(
            "security_audit_completed active_alerts=%s high_threats=%s",
            statistics.get("activeAlerts"),
            statistics.get("highThreatIdentifiers"),
        )
        return audit

    async def resolve_idle_alerts(self, *, idle_window_s: int | None = None) -> int:
        # resolved only moves false -> true; an alert idles once its event key stops receiving events.
        now = epoch_ms(self._time)
        idle_ms = (idle_window_s or self._config.alert_idle_resolve_s) * 1000
        open_alerts = await self._store.query(
            ALERTS_COLLECTION,
            filters=[FieldFilter("resolved", "==", False)],
            limit=self._config.cleanup_batch_size,
        )
        resolved = 0
        for alert in open_alerts:
            last_activity = int(alert.data.get("timestamp", 0))
            event_key = alert.data.get("eventKey")
            if event_key:
                counts = await self._store.get(EVENT_COUNTS_COLLECTION, event_key)
                if counts is not None:
                    last_activity = max(last_activity, int(counts.get("lastUpdated", 0)))
            if now - last_activity < idle_ms:
                continue
            await self._store.update(ALERTS_COLLECTION, alert.doc_id, {"resolved": True, "resolvedAt": now})
            resolved += 1
        if resolved:
            logger.info("security_alerts_auto_resolved count=%s", resolved)
        return resolved

    async def cleanup_expired(self) -> dict[str, int]:
        now = epoch_ms(self._time)
        removed: dict[str, int] = {}
        for collection in MONITOR_COLLECTIONS:
            try:
                removed[collection] = await self._store.purge_expired(
                    collection, now, limit=self._config.cleanup_batch_size
                )
            except DocumentStoreError as exc:
                logger.error("security_monitor_cleanup_failed collection=%s", collection, exc_info=exc)
                removed[collection] = 0
        return removed
