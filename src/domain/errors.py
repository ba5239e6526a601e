from __future__ import annotations

from typing import Any, Protocol


class FicErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


class FicError(Exception):
    """Base class for failures talking to, or configured for, Fatture in Cloud."""

    category = "unknown"
    http_status = 502

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class AuthenticationError(FicError):
    """Expired/invalid access token (401/403 from the remote API)."""

    category = "terminal"
    http_status = 401


class RateLimitError(FicError):
    category = "transient"
    http_status = 429

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class NotFoundError(FicError):
    category = "terminal"
    http_status = 404


class RemoteNotFoundError(NotFoundError):
    """The remote API answered 404 for a subscription or resource."""


class SubscriptionGoneError(NotFoundError):
    """The remote API answered 410: the subscription was permanently dismissed."""

    http_status = 410


class ValidationError(FicError):
    category = "terminal"
    http_status = 422


class TransientNetworkError(FicError):
    category = "transient"
    http_status = 503


class UnexpectedResponseError(FicError):
    category = "unknown"
    http_status = 502


class ReconciliationConflictError(FicError):
    """A subscription whose sink points at another account.

    Only ever recorded in reconciliation reports; the reconciler repairs it
    instead of raising.
    """

    category = "terminal"
    http_status = 409


class SignatureVerificationError(FicError):
    category = "terminal"
    http_status = 401


class WebhookMisconfiguredError(FicError):
    category = "terminal"
    http_status = 503


class VerificationCooldownError(FicError):
    category = "transient"
    http_status = 429

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class VerificationExhaustedError(FicError):
    category = "terminal"
    http_status = 409


def fic_error_http_status(exc: FicErrorLike) -> int:
    explicit = getattr(exc, "http_status", None)
    if isinstance(explicit, int):
        return explicit
    return 503 if exc.retryable else 502


def fic_error_detail(*, operation: str, exc: FicErrorLike) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "type": "fic_error",
        "error": type(exc).__name__,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        detail["retry_after"] = retry_after
    return detail
