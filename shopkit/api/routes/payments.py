"""
Payment routes: Paystack / Stripe webhooks, manual verify, checkout initiation.
Paths match the client app (src/lib/credits.js).

Webhook handlers read the raw body before anything parses it, and run the
synchronous reconciliation in the threadpool.
"""
import logging

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from shopkit.api.deps import get_paystack_client, get_reconciliation_service, get_stripe_checkout
from shopkit.core.config import settings
from shopkit.db.session import get_db
from shopkit.schemas.payments import CheckoutRequest, PackOut
from shopkit.services.payments.checkout import CheckoutService
from shopkit.services.payments.errors import (
    CheckoutError,
    PaystackError,
    PaystackTimeoutError,
    PaystackUnavailableError,
    StripeCheckoutError,
    StripeUnavailableError,
)
from shopkit.services.payments.notifications import PROVIDER_PAYSTACK, PROVIDER_STRIPE
from shopkit.services.payments.paystack import PaystackClient
from shopkit.services.payments.reconciliation import ReconciliationResult, ReconciliationService
from shopkit.services.payments.stripe_checkout import StripeCheckoutClient
from shopkit.utils.metrics import payment_webhooks_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])


def _webhook_response(provider: str, result: ReconciliationResult) -> JSONResponse:
    payment_webhooks_total.labels(provider=provider, outcome=result.state.value).inc()
    return JSONResponse(status_code=result.http_status, content=result.to_response(include_order=False))


@router.post("/paystack-webhook")
async def paystack_webhook(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    raw = await request.body()
    signature = request.headers.get("x-paystack-signature")
    result = await run_in_threadpool(service.handle_webhook, PROVIDER_PAYSTACK, raw, signature)
    return _webhook_response(PROVIDER_PAYSTACK, result)


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    raw = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(service.handle_webhook, PROVIDER_STRIPE, raw, signature)
    return _webhook_response(PROVIDER_STRIPE, result)


@router.api_route("/verify-paystack-payment", methods=["GET", "POST"])
async def verify_paystack_payment(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Manual verify for the UI poller when no webhook has arrived yet.
    Accepts `reference` (or `ref`) in the query string or a JSON body.
    """
    reference = (request.query_params.get("reference") or request.query_params.get("ref") or "").strip()
    if not reference and request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            reference = body.get("reference") or body.get("ref")
            reference = reference.strip() if isinstance(reference, str) else None
    if not reference:
        return JSONResponse(status_code=400, content={"ok": False, "message": "Missing reference"})

    result = await run_in_threadpool(service.verify_reference, reference)
    payment_webhooks_total.labels(provider="paystack_verify", outcome=result.state.value).inc()
    return JSONResponse(status_code=result.http_status, content=result.to_response())


@router.get("/packs", response_model=list[PackOut])
def list_packs(db: Session = Depends(get_db)) -> list[PackOut]:
    service = CheckoutService(db)
    return [
        PackOut(id=p.id, name=p.name, credits=p.credits, price=float(p.price), currency=p.currency)
        for p in service.list_active_packs()
    ]


@router.post("/create-paystack-payment")
def create_paystack_payment(
    body: CheckoutRequest = Body(...),
    db: Session = Depends(get_db),
    paystack: PaystackClient | None = Depends(get_paystack_client),
):
    if paystack is None:
        return JSONResponse(status_code=500, content={"error": "Missing PAYSTACK_SECRET_KEY env var"})
    service = CheckoutService(db, paystack=paystack)
    try:
        return service.start_paystack_checkout(
            client_id=body.client_id,
            pack_id=body.pack_id,
            email=body.email,
            payment_method=body.payment_method,
            callback_url=settings.paystack_return_url,
        )
    except CheckoutError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except (PaystackTimeoutError, PaystackUnavailableError) as e:
        return JSONResponse(status_code=503, content={"error": "paystack_unavailable", "detail": str(e)})
    except PaystackError as e:
        return JSONResponse(status_code=400, content={"error": str(e) or "paystack_init_failed"})


@router.post("/create-checkout-session")
def create_checkout_session(
    body: CheckoutRequest = Body(...),
    db: Session = Depends(get_db),
    stripe_checkout: StripeCheckoutClient | None = Depends(get_stripe_checkout),
):
    """Stripe Checkout for a credit pack; the client redirects to `url`."""
    if stripe_checkout is None:
        return JSONResponse(status_code=500, content={"error": "No payment provider configured"})
    service = CheckoutService(db, stripe_checkout=stripe_checkout)
    try:
        return service.start_stripe_checkout(client_id=body.client_id, pack_id=body.pack_id, email=body.email)
    except CheckoutError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except StripeUnavailableError as e:
        return JSONResponse(status_code=503, content={"error": "stripe_unavailable", "detail": str(e)})
    except StripeCheckoutError as e:
        return JSONResponse(status_code=502, content={"error": "stripe_checkout_failed", "detail": str(e)})
