from fastapi import Depends
from sqlalchemy.orm import Session

from shopkit.core.config import settings
from shopkit.db.session import get_db
from shopkit.services.payments.paystack import PaystackClient
from shopkit.services.payments.reconciliation import ReconciliationConfig, ReconciliationService
from shopkit.services.payments.stripe_checkout import StripeCheckoutClient

_paystack_client: PaystackClient | None = None


def get_paystack_client() -> PaystackClient | None:
    """Shared client (one httpx connection pool per process). None when no secret is set."""
    global _paystack_client
    if not settings.paystack_secret_key:
        return None
    if _paystack_client is None:
        _paystack_client = PaystackClient.from_settings()
    return _paystack_client


def get_reconciliation_service(
    db: Session = Depends(get_db),
    paystack: PaystackClient | None = Depends(get_paystack_client),
) -> ReconciliationService:
    return ReconciliationService(db, ReconciliationConfig.from_settings(settings), paystack=paystack)


_stripe_checkout: StripeCheckoutClient | None = None


def get_stripe_checkout() -> StripeCheckoutClient | None:
    """None when STRIPE_SECRET_KEY is not set."""
    global _stripe_checkout
    if not settings.stripe_secret_key:
        return None
    if _stripe_checkout is None:
        _stripe_checkout = StripeCheckoutClient.from_settings()
    return _stripe_checkout
