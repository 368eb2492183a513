"""
Stripe Checkout Session creation for credit packs.
Calls go through the `stripe` circuit breaker; request errors (4xx) do not trip it.
"""
import logging
from typing import Any

import pybreaker
import stripe

from shopkit.core.config import settings
from shopkit.services.payments.errors import StripeCheckoutError, StripeUnavailableError
from shopkit.utils.metrics import stripe_requests_total

logger = logging.getLogger(__name__)

# caller mistakes, not an outage
BREAKER_EXCLUDED_ERRORS = [stripe.InvalidRequestError, stripe.CardError]


class StripeCheckoutClient:
    def __init__(
        self,
        secret_key: str,
        success_url: str,
        cancel_url: str,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._breaker = breaker

    @classmethod
    def from_settings(cls) -> "StripeCheckoutClient":
        from shopkit.services.circuit_breaker import get_circuit_breaker

        return cls(
            secret_key=settings.stripe_secret_key,
            success_url=settings.stripe_return_url,
            cancel_url=settings.stripe_checkout_cancel_url,
            breaker=get_circuit_breaker("stripe", exclude=BREAKER_EXCLUDED_ERRORS),
        )

    def create_session(
        self,
        *,
        order_id: str,
        amount_minor: int,
        currency: str,
        product_name: str,
        metadata: dict[str, Any],
        customer_email: str | None = None,
    ) -> dict[str, Any]:
        """One-off `payment` session; `client_reference_id` is the order id. Returns `{id, url}`."""
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": product_name},
                    "unit_amount": amount_minor,
                },
                "quantity": 1,
            }],
            "client_reference_id": order_id,
            "metadata": metadata,
            "success_url": self._success_url,
            "cancel_url": self._cancel_url,
            "api_key": self._secret_key,
            # a retried request for the same order returns the same session
            "idempotency_key": f"checkout-{order_id}",
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            if self._breaker is not None:
                session = self._breaker.call(stripe.checkout.Session.create, **params)
            else:
                session = stripe.checkout.Session.create(**params)
        except pybreaker.CircuitBreakerError as e:
            stripe_requests_total.labels(endpoint="checkout_session", status="breaker_open").inc()
            raise StripeUnavailableError("stripe circuit breaker is open") from e
        except stripe.StripeError as e:
            stripe_requests_total.labels(endpoint="checkout_session", status="error").inc()
            logger.warning("stripe_checkout_failed", extra={"order_id": order_id, "error": str(e)})
            raise StripeCheckoutError(e.user_message or str(e)) from e

        stripe_requests_total.labels(endpoint="checkout_session", status="success").inc()
        return {"id": session.id, "url": session.url}
