"""Typed errors raised by the order engine and its provider adapters.

Domain errors carry a short machine ``code`` (returned to API clients as
``detail``) and the HTTP status the views map them to. Infrastructure
failures are kept apart in ``UpstreamProviderError`` so callers can tell a
rejected request from a provider that is down.
"""

from typing import Optional


class DomainError(Exception):
    """Base class for guard and input failures inside the engine."""

    code = "DOMAIN_ERROR"
    http_status = 400

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or code or self.code)
        if code:
            self.code = code


class ValidationError(DomainError):
    code = "INVALID_ARGUMENT"
    http_status = 400


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(DomainError):
    code = "FORBIDDEN"
    http_status = 403


class InvalidTransitionError(DomainError):
    """A transition guard failed, or a concurrent writer got there first.

    Attributes:
        current: Status observed when the guard was evaluated (if known).
        target: Status the caller tried to reach.
    """

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current=None, target=None, message: str = ""):
        self.current = current
        self.target = target
        if not message:
            message = f"cannot move order from {_value(current)} to {_value(target)}"
        super().__init__(message)


class PaymentNotCapturedError(DomainError):
    code = "PAYMENT_NOT_CAPTURED"
    http_status = 402


class CheckoutFailedError(DomainError):
    code = "CHECKOUT_FAILED"
    http_status = 422


class BookUnavailableError(DomainError):
    """A book in the order was sold to, or is held by, another buyer."""

    code = "BOOK_UNAVAILABLE"
    http_status = 409


class DuplicateOrderError(DomainError):
    """An order already exists for this payment reference and seller."""

    code = "DUPLICATE_ORDER"
    http_status = 409


class DuplicatePayoutError(DomainError):
    """A non-failed payout already exists for the order."""

    code = "PAYOUT_EXISTS"
    http_status = 409


class UpstreamProviderError(Exception):
    """A payment, delivery or notification provider call failed.

    Attributes:
        provider: Name of the downstream provider (``payments``, a courier name...).
        transient: True for timeouts, transport errors, 5xx and open circuits;
            False for permanent rejections (4xx) that must not be retried.
        status_code: HTTP status returned by the provider, when there was one.
    """

    def __init__(self, provider: str, message: str, transient: bool = True, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.transient = transient
        self.status_code = status_code


class AuthenticityError(Exception):
    """Inbound webhook signature did not match the shared secret."""


def _value(status):
    return getattr(status, "value", status)
