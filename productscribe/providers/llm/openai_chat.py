from __future__ import annotations

import logging
import time

import httpx

from productscribe.core.config import get_settings
from productscribe.core.errors import LLMAuthError, LLMError, LLMRateLimitError, ProviderConfigError
from productscribe.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from productscribe.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION = "llm.openai"


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    return isinstance(status, int) and status >= 500


class OpenAIDescriptionModel:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker: CircuitBreaker | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        # Share breaker state across instances for completion calls.
        if self._breaker is not None:
            return self._breaker
        self._breaker = CircuitBreaker(INTEGRATION, redis=await get_resilience_redis())
        return self._breaker

    def _record(self, start: float, success: bool) -> None:
        record_external_call(
            integration=INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )

    async def complete(self, messages: list[dict[str, str]]) -> str:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the OpenAI description model")

        payload = {
            "model": self._settings.openai_model,
            "messages": messages,
            "max_tokens": self._settings.openai_max_tokens,
            "temperature": self._settings.openai_temperature,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        client = self._get_client()

        breaker = await self._get_breaker()
        start = time.monotonic()
        try:
            await breaker.before_call()

            async def _call() -> httpx.Response:
                response = await client.post(url, json=payload, headers=headers)
                if response.status_code >= 500:
                    # Surface 5xx as an exception so retry_async can retry it.
                    response.raise_for_status()
                return response

            response = await retry_async(_call, retryable=_retryable)
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            self._record(start, False)
            logger.warning("llm_request_failed integration=%s error=%s", INTEGRATION, type(exc).__name__)
            raise LLMError("Description model request failed.") from exc

        if response.status_code in {401, 403}:
            self._record(start, False)
            raise LLMAuthError("Description model auth error: check OPENAI_API_KEY.")
        if response.status_code == 429:
            self._record(start, False)
            raise LLMRateLimitError("Description model rate limit exceeded.")
        if response.status_code >= 400:
            self._record(start, False)
            error = LLMError(f"Description model error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            await breaker.record_failure()
            self._record(start, False)
            raise LLMError("Description model returned an unexpected payload.") from exc

        await breaker.record_success()
        self._record(start, True)
        return str(content).strip()
