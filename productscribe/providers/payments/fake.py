from __future__ import annotations

from typing import Any

from productscribe.core.errors import PaymentProviderError
from productscribe.providers.payments.base import CreatedSubscription


class FakePaymentProvider:
    def __init__(self, *, fail_with: PaymentProviderError | None = None) -> None:
        # Deterministic ids keep payment tests free of external calls.
        self._fail_with = fail_with
        self.created: list[dict[str, str]] = []
        self.captured: list[str] = []

    def _maybe_fail(self) -> None:
        if self._fail_with is not None:
            raise self._fail_with

    async def create_subscription(
        self, plan_id: str, email: str, *, return_url: str, cancel_url: str
    ) -> CreatedSubscription:
        self._maybe_fail()
        self.created.append({"plan_id": plan_id, "email": email})
        subscription_id = f"I-FAKE{len(self.created):04d}"
        return CreatedSubscription(
            subscription_id=subscription_id,
            approval_url=f"https://payments.example/approve/{subscription_id}",
            status="APPROVAL_PENDING",
        )

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        self._maybe_fail()
        self.captured.append(order_id)
        return {"id": order_id, "status": "COMPLETED"}

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        self._maybe_fail()
        return {"id": subscription_id, "status": "ACTIVE"}
