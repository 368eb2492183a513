class ReconciliationError(Exception):
    """Base error for payment reconciliation."""


class ReconciliationStorageError(ReconciliationError):
    """Transient storage failure; the whole notification may be retried."""


class CheckoutError(ValueError):
    """Checkout request cannot be fulfilled (unknown pack, missing client id)."""


class PaystackError(Exception):
    """Base error for Paystack API calls."""


class PaystackTimeoutError(PaystackError):
    """Paystack did not answer within the configured timeout."""


class PaystackUnavailableError(PaystackError):
    """Circuit breaker is open for Paystack."""


class PaystackResponseError(PaystackError):
    """Paystack answered, but not with a usable `{status: true, data: ...}` body."""

    def __init__(self, message: str, status_code: int | None = None, body: dict | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}


class StripeCheckoutError(Exception):
    """Stripe refused or failed to create a Checkout Session."""


class StripeUnavailableError(StripeCheckoutError):
    """Circuit breaker is open for Stripe."""
