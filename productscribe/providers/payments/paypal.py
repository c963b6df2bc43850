from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from productscribe.core.config import get_settings
from productscribe.core.errors import PaymentConfigError, PaymentProviderError
from productscribe.providers.payments.base import CreatedSubscription
from productscribe.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from productscribe.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION = "payments.paypal"
LIVE_BASE_URL = "https://api-m.paypal.com"
SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
BRAND_NAME = "ProductScribe AI Description Generator"
# Refresh access tokens this many seconds before PayPal expires them.
_TOKEN_REFRESH_MARGIN_S = 60


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    return isinstance(status, int) and status >= 500


class PayPalProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker: CircuitBreaker | None = None
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        return LIVE_BASE_URL if self._settings.paypal_mode == "live" else SANDBOX_BASE_URL

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        self._breaker = CircuitBreaker(INTEGRATION, redis=await get_resilience_redis())
        return self._breaker

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        breaker = await self._get_breaker()
        start = time.monotonic()
        try:
            await breaker.before_call()

            async def _call() -> httpx.Response:
                response = await client.request(method, f"{self.base_url}{path}", **kwargs)
                if response.status_code >= 500:
                    response.raise_for_status()
                return response

            response = await retry_async(_call, retryable=_retryable)
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            record_external_call(
                integration=INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            logger.warning("paypal_request_failed path=%s error=%s", path, type(exc).__name__)
            raise PaymentProviderError("PayPal request failed") from exc

        await breaker.record_success()
        record_external_call(
            integration=INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        return response

    async def _get_access_token(self) -> str:
        # Client-credentials tokens are cached until shortly before expiry.
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        client_id = self._settings.paypal_client_id
        client_secret = self._settings.paypal_client_secret
        if not client_id or not client_secret:
            raise PaymentConfigError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required")
        response = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(client_id, client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code >= 400:
            raise PaymentProviderError(
                f"PayPal authentication failed: {response.status_code}", status_code=response.status_code
            )
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise PaymentProviderError("PayPal authentication returned no access token")
        self._access_token = str(token)
        expires_in = float(payload.get("expires_in") or 0)
        self._token_expires_at = time.monotonic() + max(0.0, expires_in - _TOKEN_REFRESH_MARGIN_S)
        return self._access_token

    async def _authorized_headers(self) -> dict[str, str]:
        token = await self._get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def create_subscription(
        self, plan_id: str, email: str, *, return_url: str, cancel_url: str
    ) -> CreatedSubscription:
        headers = await self._authorized_headers()
        headers["Prefer"] = "return=representation"
        payload = {
            "plan_id": plan_id,
            "subscriber": {"email_address": email},
            "application_context": {
                "brand_name": BRAND_NAME,
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        response = await self._request("POST", "/v1/billing/subscriptions", json=payload, headers=headers)
        body = response.json()
        if response.status_code >= 400:
            raise PaymentProviderError(
                str(body.get("message") or "PayPal subscription creation failed"), status_code=response.status_code
            )
        approval_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") == "approve"), None
        )
        return CreatedSubscription(
            subscription_id=str(body.get("id")), approval_url=approval_url, status=str(body.get("status"))
        )

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        headers = await self._authorized_headers()
        response = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", headers=headers)
        body = response.json()
        if response.status_code >= 400:
            raise PaymentProviderError(
                str(body.get("message") or "Order capture failed"), status_code=response.status_code
            )
        return body

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        headers = await self._authorized_headers()
        response = await self._request("GET", f"/v1/billing/subscriptions/{subscription_id}", headers=headers)
        body = response.json()
        if response.status_code >= 400:
            raise PaymentProviderError(
                str(body.get("message") or "Subscription lookup failed"), status_code=response.status_code
            )
        return body
