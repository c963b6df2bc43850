from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from productscribe.core.config import get_settings
from productscribe.core.errors import (
    LLMAuthError,
    LLMError,
    LLMRateLimitError,
    PaymentConfigError,
    PaymentProviderError,
    ProviderConfigError,
)
from productscribe.providers.llm.factory import get_description_model
from productscribe.providers.llm.fake import FakeDescriptionModel
from productscribe.providers.llm.openai_chat import OpenAIDescriptionModel
from productscribe.providers.payments.factory import get_payment_provider
from productscribe.providers.payments.paypal import SANDBOX_BASE_URL, PayPalProvider
from productscribe.services.telemetry import counters_snapshot


MESSAGES = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "describe a watch"}]


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def openai_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()


@pytest.fixture
def paypal_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "client-id")
    monkeypatch.setenv("PAYPAL_CLIENT_SECRET", "client-secret")
    get_settings.cache_clear()


def test_factories_honour_configured_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(get_description_model(), FakeDescriptionModel)
    monkeypatch.setenv("LLM_PROVIDER", "bard")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_description_model()
    monkeypatch.setenv("PAYMENT_PROVIDER", "paypal")
    get_settings.cache_clear()
    assert isinstance(get_payment_provider(), PayPalProvider)


@pytest.mark.asyncio
async def test_openai_returns_trimmed_completion(openai_env: None) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  A watch worth wearing. "}}]})

    model = OpenAIDescriptionModel(client=_client(handler))
    assert await model.complete(MESSAGES) == "A watch worth wearing."

    sent = json.loads(seen[0].content)
    assert seen[0].url.path == "/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert sent["model"] == "gpt-4"
    assert sent["messages"] == MESSAGES
    assert counters_snapshot()["external_calls_total.llm.openai.ok"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [(401, LLMAuthError), (429, LLMRateLimitError), (400, LLMError)],
)
async def test_openai_maps_client_errors(openai_env: None, status_code: int, error_type: type[Exception]) -> None:
    model = OpenAIDescriptionModel(client=_client(lambda request: httpx.Response(status_code, json={})))
    with pytest.raises(error_type):
        await model.complete(MESSAGES)


@pytest.mark.asyncio
async def test_openai_retries_upstream_failures_then_gives_up(openai_env: None) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, json={"error": "overloaded"})

    model = OpenAIDescriptionModel(client=_client(handler))
    with pytest.raises(LLMError):
        await model.complete(MESSAGES)
    assert calls["count"] == 2
    assert counters_snapshot()["external_calls_total.llm.openai.error"] == 1


@pytest.mark.asyncio
async def test_openai_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    model = OpenAIDescriptionModel(client=_client(lambda request: httpx.Response(200, json={})))
    with pytest.raises(ProviderConfigError):
        await model.complete(MESSAGES)


@pytest.mark.asyncio
async def test_paypal_creates_subscription_with_cached_token(paypal_env: None) -> None:
    token_calls = {"count": 0}
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            token_calls["count"] += 1
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        assert request.headers["Authorization"] == "Bearer A21-token"
        if request.url.path == "/v1/billing/subscriptions":
            bodies.append(json.loads(request.content))
            return httpx.Response(
                201,
                json={
                    "id": "I-BW452GLLEP1G",
                    "status": "APPROVAL_PENDING",
                    "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/approve"}],
                },
            )
        return httpx.Response(201, json={"id": "ORDER-12345", "status": "COMPLETED"})

    provider = PayPalProvider(client=_client(handler))
    created = await provider.create_subscription(
        "P-STARTER", "shopper@gmail.com", return_url="https://site/success", cancel_url="https://site/cancel"
    )
    captured = await provider.capture_order("ORDER-12345")

    assert provider.base_url == SANDBOX_BASE_URL
    assert created.subscription_id == "I-BW452GLLEP1G"
    assert created.approval_url == "https://www.sandbox.paypal.com/approve"
    assert bodies[0]["plan_id"] == "P-STARTER"
    assert bodies[0]["subscriber"] == {"email_address": "shopper@gmail.com"}
    assert bodies[0]["application_context"]["return_url"] == "https://site/success"
    assert captured["status"] == "COMPLETED"
    assert token_calls["count"] == 1


@pytest.mark.asyncio
async def test_paypal_surfaces_processor_rejections(paypal_env: None) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        return httpx.Response(422, json={"message": "ORDER_NOT_APPROVED"})

    provider = PayPalProvider(client=_client(handler))
    with pytest.raises(PaymentProviderError) as excinfo:
        await provider.capture_order("ORDER-12345")
    assert excinfo.value.status_code == 422


@pytest.mark.asyncio
async def test_paypal_requires_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PAYPAL_CLIENT_ID", raising=False)
    get_settings.cache_clear()
    provider = PayPalProvider(client=_client(lambda request: httpx.Response(200, json={})))
    with pytest.raises(PaymentConfigError):
        await provider.capture_order("ORDER-12345")
