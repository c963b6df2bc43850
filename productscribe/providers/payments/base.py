from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class CreatedSubscription:
    subscription_id: str
    approval_url: str | None
    status: str


class PaymentProvider(Protocol):
    async def create_subscription(
        self, plan_id: str, email: str, *, return_url: str, cancel_url: str
    ) -> CreatedSubscription:
        ...

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        ...

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        ...


PLAN_TIERS = ("starter", "professional", "enterprise")
BILLING_CYCLES = ("monthly", "annual")


def parse_plan_name(plan_name: str) -> tuple[str, str] | None:
    # Accept "starter" (monthly) or "starter_annual" style names.
    tier, _, cycle = plan_name.strip().lower().partition("_")
    cycle = cycle or "monthly"
    if tier not in PLAN_TIERS or cycle not in BILLING_CYCLES:
        return None
    return tier, cycle


def configured_plan_ids(settings: Any) -> dict[str, str | None]:
    return {
        f"{tier}_{cycle}": getattr(settings, f"paypal_plan_{tier}_{cycle}", None)
        for tier in PLAN_TIERS
        for cycle in BILLING_CYCLES
    }
