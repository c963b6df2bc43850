from __future__ import annotations

import pytest

from productscribe.core.config import get_settings
from productscribe.services.resilience import reset_resilience_state
from productscribe.services.telemetry import reset_telemetry
from productscribe.tests.utils.app import TEST_ENV


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    # Every test runs against the in-memory store and fake integrations.
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    reset_resilience_state()
    reset_telemetry()
    yield
    get_settings.cache_clear()
