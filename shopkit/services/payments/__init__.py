"""
Payment reconciliation: webhook/verify notifications -> idempotent credit.
"""
from .checkout import CheckoutService
from .credits import CreditLedger, CreditResult
from .event_log import EventLog, RecordResult
from .locator import LocateResult, LocateStrategy, OrderLocator
from .notifications import (
    PROVIDER_PAYSTACK,
    PROVIDER_STRIPE,
    PaymentNotification,
    parse_paystack_event,
    parse_paystack_verification,
    parse_stripe_event,
)
from .paystack import PaystackClient
from .stripe_checkout import StripeCheckoutClient
from .reconciliation import (
    ReconciliationConfig,
    ReconciliationResult,
    ReconciliationService,
    ReconciliationState,
)

__all__ = [
    "CheckoutService",
    "CreditLedger",
    "CreditResult",
    "EventLog",
    "RecordResult",
    "LocateResult",
    "LocateStrategy",
    "OrderLocator",
    "PROVIDER_PAYSTACK",
    "PROVIDER_STRIPE",
    "PaymentNotification",
    "parse_paystack_event",
    "parse_paystack_verification",
    "parse_stripe_event",
    "PaystackClient",
    "ReconciliationConfig",
    "ReconciliationResult",
    "ReconciliationService",
    "ReconciliationState",
    "StripeCheckoutClient",
]
