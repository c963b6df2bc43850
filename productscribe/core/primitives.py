from __future__ import annotations

import calendar
from datetime import datetime, timezone
import hashlib
import secrets
import time
from typing import Callable


# Wall-clock source in epoch seconds; injectable for deterministic tests.
TimeProvider = Callable[[], float]


def epoch_ms(time_provider: TimeProvider | None = None) -> int:
    # Document timestamps are stored as integer epoch milliseconds.
    return int((time_provider or time.time)() * 1000)


def utc_from_ms(value_ms: int) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000.0, tz=timezone.utc)


def iso_from_ms(value_ms: int) -> str:
    # Render millisecond timestamps as ISO-8601 UTC strings for API payloads.
    return utc_from_ms(value_ms).isoformat().replace("+00:00", "Z")


def add_months(value: datetime, months: int) -> datetime:
    # Calendar month arithmetic, clamping the day to the target month length.
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def billing_period(value_ms: int) -> str:
    # Usage periods are calendar months in UTC (YYYY-MM).
    moment = utc_from_ms(value_ms)
    return f"{moment.year:04d}-{moment.month:02d}"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def keyed_digest(*parts: str, secret: str, length: int = 32) -> str:
    # Hash identifiers with the process secret so document ids never expose raw IPs or tokens.
    material = ":".join([*parts, secret])
    return sha256_hex(material)[:length]


def random_hex(nbytes: int = 8) -> str:
    return secrets.token_hex(nbytes)


def generate_id(prefix: str, now_ms: int, *, nbytes: int = 8) -> str:
    # Sortable, collision-resistant ids such as alert_<ms>_<hex16>.
    return f"{prefix}_{now_ms}_{random_hex(nbytes)}"
