from __future__ import annotations

import logging
import re
from typing import Any, Mapping


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "private_key", "cookie"]
_REDACTED_VALUE = "[REDACTED]"

_PATH_PATTERN = re.compile(r"(?:[A-Za-z]:)?(?:[\\/][\w.\-]+){2,}[\\/]?")
_LINE_PATTERN = re.compile(r"line \d+", re.IGNORECASE)
_STACK_PATTERN = re.compile(r"\bat [\w.<>$]+ \([^)]*\)")
_MAX_ERROR_TEXT = 100

UNKNOWN_IP = "unknown"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def sanitize_error_text(message: str | None) -> str:
    # Strip filesystem paths, line numbers and stack frames before text reaches a client.
    if not message:
        return "Authentication failed"
    cleaned = _PATH_PATTERN.sub("[PATH_REMOVED]", str(message))
    cleaned = _LINE_PATTERN.sub("[LINE_REMOVED]", cleaned)
    cleaned = _STACK_PATTERN.sub("[STACK_REMOVED]", cleaned)
    cleaned = " ".join(cleaned.split())
    return cleaned[:_MAX_ERROR_TEXT]


def resolve_client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str:
    # Prefer the first proxy hop, then the edge-provided headers, then the socket peer.
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "client-ip"):
        value = headers.get(header)
        if value and value.strip():
            return value.strip()
    return fallback or UNKNOWN_IP
