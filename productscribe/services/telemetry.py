from __future__ import annotations

from collections import defaultdict

# Process-local counters and gauges; durable security state lives in the document store.
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    increment_counter(f"http_requests_total.{status_code // 100}xx")
    if status_code in (401, 403, 429, 503):
        # Denials by path make a misbehaving client visible without reading the event log.
        increment_counter(f"http_denials_total.{path.strip('/') or 'root'}.{status_code}")
    set_gauge("http_last_latency_ms", round(latency_ms, 3))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    outcome = "ok" if success else "error"
    increment_counter(f"external_calls_total.{integration}.{outcome}")
    set_gauge(f"external_call_latency_ms.{integration}", round(latency_ms, 3))


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests start from empty counters.
    _counters.clear()
    _gauges.clear()
