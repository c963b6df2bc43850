from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Awaitable, Callable

import dns.asyncresolver
import dns.exception
import dns.resolver
from email_validator import EmailNotValidError, validate_email

from productscribe.core.errors import EmailValidationError


logger = logging.getLogger(__name__)

# Mail providers accepted for operator-entered and payment emails.
APPROVED_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "outlook.com",
        "hotmail.com",
        "yahoo.com",
        "icloud.com",
        "protonmail.com",
        "aol.com",
    }
)

_TLD_RE = re.compile(r"\.([a-zA-Z]{2,})$")

EMAIL_REQUIRED = "EMAIL_REQUIRED"
EMAIL_LENGTH = "EMAIL_LENGTH"
EMAIL_FORMAT = "EMAIL_FORMAT"
EMAIL_TLD = "EMAIL_TLD"
EMAIL_DOMAIN_NOT_APPROVED = "EMAIL_DOMAIN_NOT_APPROVED"
EMAIL_NO_MX = "EMAIL_NO_MX"
EMAIL_MX_LOOKUP_FAILED = "EMAIL_MX_LOOKUP_FAILED"

# Returns True when the domain publishes at least one MX record.
MxChecker = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class EmailCheck:
    valid: bool
    email: str | None = None
    kind: str | None = None
    error: str | None = None


async def resolve_mx(domain: str, *, timeout_s: float = 3.0) -> bool:
    try:
        answer = await dns.asyncresolver.resolve(domain, "MX", lifetime=timeout_s)
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        return False
    return len(answer) > 0


class EmailPolicy:
    """Format, TLD, provider allow-list and live MX checks for emails entered by operators."""

    def __init__(
        self,
        *,
        approved_domains: frozenset[str] = APPROVED_EMAIL_DOMAINS,
        mx_checker: MxChecker | None = None,
    ) -> None:
        self._approved = frozenset(domain.lower() for domain in approved_domains)
        self._mx_checker = mx_checker or resolve_mx

    async def check(self, email: str | None) -> EmailCheck:
        if not email or not isinstance(email, str):
            return EmailCheck(False, kind=EMAIL_REQUIRED, error="Email is required and must be a string")
        email = email.strip()
        if len(email) < 3 or len(email) > 320:
            return EmailCheck(False, kind=EMAIL_LENGTH, error="Email length must be between 3 and 320 characters")
        local, sep, domain = email.rpartition("@")
        if not sep or not local or len(local) > 64 or not domain or len(domain) > 255:
            return EmailCheck(False, kind=EMAIL_FORMAT, error="Invalid email format")
        if not _TLD_RE.search(domain):
            return EmailCheck(False, kind=EMAIL_TLD, error="Domain must have a valid TLD with at least 2 characters")
        try:
            normalized = validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError:
            return EmailCheck(False, kind=EMAIL_FORMAT, error="Email format does not match security requirements")
        domain = domain.lower()
        if domain not in self._approved:
            return EmailCheck(
                False,
                kind=EMAIL_DOMAIN_NOT_APPROVED,
                error="Email domain not in approved list. Please use Gmail, Outlook, Yahoo, iCloud, ProtonMail, or AOL",
            )
        try:
            has_mx = await self._mx_checker(domain)
        except dns.exception.DNSException as exc:
            logger.warning("email_mx_lookup_failed domain=%s error=%s", domain, type(exc).__name__)
            return EmailCheck(False, kind=EMAIL_MX_LOOKUP_FAILED, error="Email domain cannot be verified")
        if not has_mx:
            return EmailCheck(False, kind=EMAIL_NO_MX, error="Email domain does not have valid mail servers")
        return EmailCheck(True, email=normalized.lower())

    async def require(self, email: str | None) -> str:
        result = await self.check(email)
        if not result.valid:
            raise EmailValidationError(result.error or "Invalid email", kind=result.kind or "EMAIL_INVALID")
        return result.email or ""
