from __future__ import annotations

import dns.exception
import pytest

from productscribe.core.errors import EmailValidationError
from productscribe.services.email_validation import (
    EMAIL_DOMAIN_NOT_APPROVED,
    EMAIL_FORMAT,
    EMAIL_LENGTH,
    EMAIL_MX_LOOKUP_FAILED,
    EMAIL_NO_MX,
    EMAIL_REQUIRED,
    EMAIL_TLD,
    EmailPolicy,
)


class StubMx:
    def __init__(self, answer: bool = True, error: Exception | None = None) -> None:
        self.answer = answer
        self.error = error
        self.domains: list[str] = []

    async def __call__(self, domain: str) -> bool:
        self.domains.append(domain)
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.mark.asyncio
async def test_rejections_stop_before_mx_lookup() -> None:
    mx = StubMx()
    policy = EmailPolicy(mx_checker=mx)
    cases = {
        None: EMAIL_REQUIRED,
        "": EMAIL_REQUIRED,
        "ab": EMAIL_LENGTH,
        "no-at-sign.com": EMAIL_FORMAT,
        "someone@localhost": EMAIL_TLD,
        "a..b@gmail.com": EMAIL_FORMAT,
        "buyer@corp.io": EMAIL_DOMAIN_NOT_APPROVED,
    }
    for email, kind in cases.items():
        result = await policy.check(email)
        assert result.valid is False, email
        assert result.kind == kind, email
    assert mx.domains == []


@pytest.mark.asyncio
async def test_mx_outcomes() -> None:
    assert (await EmailPolicy(mx_checker=StubMx(answer=False)).check("buyer@gmail.com")).kind == EMAIL_NO_MX
    timeout = StubMx(error=dns.exception.DNSException("resolver unavailable"))
    assert (await EmailPolicy(mx_checker=timeout).check("buyer@gmail.com")).kind == EMAIL_MX_LOOKUP_FAILED


@pytest.mark.asyncio
async def test_valid_email_is_normalized() -> None:
    mx = StubMx()
    policy = EmailPolicy(mx_checker=mx)
    assert await policy.require("  Shopper@Gmail.com ") == "shopper@gmail.com"
    assert mx.domains == ["gmail.com"]


@pytest.mark.asyncio
async def test_require_raises_with_kind() -> None:
    policy = EmailPolicy(mx_checker=StubMx(), approved_domains=frozenset({"shop.test"}))
    with pytest.raises(EmailValidationError) as excinfo:
        await policy.require("buyer@gmail.com")
    assert excinfo.value.kind == EMAIL_DOMAIN_NOT_APPROVED
