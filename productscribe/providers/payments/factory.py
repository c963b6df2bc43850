from __future__ import annotations

from productscribe.core.config import get_settings
from productscribe.core.errors import ProviderConfigError
from productscribe.providers.payments.base import PaymentProvider
from productscribe.providers.payments.fake import FakePaymentProvider
from productscribe.providers.payments.paypal import PayPalProvider


def get_payment_provider() -> PaymentProvider:
    settings = get_settings()
    provider = (settings.payment_provider or "paypal").lower()

    if provider == "fake":
        return FakePaymentProvider()
    if provider == "paypal":
        return PayPalProvider()

    raise ProviderConfigError(f"Unsupported payment provider: {provider}")
