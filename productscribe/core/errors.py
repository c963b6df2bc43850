from __future__ import annotations


class ProductScribeError(Exception):
    """Base error for productscribe."""


class ProviderConfigError(ProductScribeError):
    """Missing or invalid provider configuration."""


class IntegrationUnavailableError(ProductScribeError):
    """Integration short-circuited by an open circuit breaker."""


class DocumentStoreError(ProductScribeError):
    """Document store failure."""


class DocumentStoreTimeoutError(DocumentStoreError):
    """Document store operation exceeded its time budget."""


class DocumentNotFoundError(DocumentStoreError):
    """Update targeted a document that does not exist."""


class TransactionConflictError(DocumentStoreError):
    """Optimistic transaction lost a race with a concurrent writer."""


class IdentityVerificationError(ProductScribeError):
    """Bearer token rejected; kind carries the failure taxonomy value."""

    def __init__(self, kind: str, message: str, *, status_code: int = 401) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code


class EmailValidationError(ProductScribeError):
    """Email address failed format, domain or MX policy."""

    def __init__(self, message: str, *, kind: str = "EMAIL_INVALID") -> None:
        super().__init__(message)
        self.kind = kind


class LLMError(ProductScribeError):
    """Description model request failure."""


class LLMAuthError(LLMError):
    """Description model authentication/authorization failure."""


class LLMRateLimitError(LLMError):
    """Description model throttled the request."""


class PaymentConfigError(ProductScribeError):
    """Payment processor credentials or plan ids missing."""


class PaymentProviderError(ProductScribeError):
    """Payment processor request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UserLifecycleError(ProductScribeError):
    """User lifecycle precondition failure."""


class UserExistsError(UserLifecycleError):
    """A trial or subscribed record already exists for the user."""


class UserNotFoundError(UserLifecycleError):
    """No trial or subscribed record exists for the user."""


class UsageLimitExceededError(UserLifecycleError):
    """The user has no remaining descriptions for the current period."""

    def __init__(self, message: str, *, usage: dict | None = None) -> None:
        super().__init__(message)
        self.usage = usage or {}


class SubscriptionInactiveError(UserLifecycleError):
    """Paid plan without an active subscription."""
