"""
CheckoutService - credit packs, lazy customer creation and pending orders.

Ответственности:
- Каталог пакетов кредитов (credit_packs)
- Создание pending-заказа до того, как процессор сможет прислать уведомление
- Инициализация транзакции Paystack (order_id == reference)
- Stripe Checkout Session (client_reference_id == order_id)
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shopkit.models.customer import Customer
from shopkit.models.order import ORDER_FAILED, ORDER_PENDING, Order
from shopkit.models.pack import CreditPack
from shopkit.services.payments.errors import CheckoutError, PaystackError, StripeCheckoutError
from shopkit.services.payments.notifications import PROVIDER_PAYSTACK, PROVIDER_STRIPE
from shopkit.services.payments.paystack import PaystackClient
from shopkit.services.payments.stripe_checkout import StripeCheckoutClient

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("card", "mpesa", "manual")
# Paystack channels per payment method
PAYSTACK_CHANNELS = {"card": ["card"], "mpesa": ["mobile_money"]}


def to_minor_units(amount: Decimal | float | int) -> int:
    """300.00 -> 30000 (kobo / cents)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CheckoutService:
    def __init__(
        self,
        db: Session,
        paystack: PaystackClient | None = None,
        stripe_checkout: StripeCheckoutClient | None = None,
    ):
        self.db = db
        self.paystack = paystack
        self.stripe_checkout = stripe_checkout

    # ------------------------------------------------------------------
    # Pack management
    # ------------------------------------------------------------------

    def list_active_packs(self) -> list[CreditPack]:
        return (
            self.db.query(CreditPack)
            .filter(CreditPack.enabled.is_(True))
            .order_by(CreditPack.order_index)
            .all()
        )

    def get_pack(self, pack_id: str) -> CreditPack | None:
        return self.db.query(CreditPack).filter(CreditPack.id == pack_id).one_or_none()

    def seed_default_packs(self, currency: str = "KES") -> int:
        """Создать пакеты по умолчанию, если таблица пустая. Returns number of packs added."""
        if self.db.query(CreditPack).count() > 0:
            return 0
        defaults = [
            CreditPack(id="starter", name="Starter", credits=10, price=Decimal("100.00"), currency=currency, order_index=0),
            CreditPack(id="standard", name="Standard", credits=50, price=Decimal("400.00"), currency=currency, order_index=1),
            CreditPack(id="pro", name="Pro", credits=150, price=Decimal("1000.00"), currency=currency, order_index=2),
        ]
        for pack in defaults:
            self.db.add(pack)
        self.db.flush()
        logger.info("default_packs_seeded", extra={"credits": sum(p.credits for p in defaults)})
        return len(defaults)

    # ------------------------------------------------------------------
    # Customers & orders
    # ------------------------------------------------------------------

    def get_or_create_customer(self, client_id: str, email: str | None = None) -> Customer:
        customer = self.db.query(Customer).filter(Customer.client_id == client_id).one_or_none()
        if customer:
            if email and not customer.email:
                customer.email = email
                self.db.flush()
            return customer
        try:
            with self.db.begin_nested():
                customer = Customer(client_id=client_id, credits=0, email=email)
                self.db.add(customer)
                self.db.flush()
        except IntegrityError:
            # created concurrently by another request
            customer = self.db.query(Customer).filter(Customer.client_id == client_id).one()
        else:
            logger.info("customer_created", extra={"client_id": client_id})
        return customer

    def create_pending_order(
        self,
        client_id: str,
        pack: CreditPack,
        payment_method: str = "card",
        provider: str = PROVIDER_PAYSTACK,
    ) -> Order:
        if payment_method not in PAYMENT_METHODS:
            raise CheckoutError(f"unsupported payment method: {payment_method}")
        order = Order(
            client_id=client_id,
            pack_id=pack.id,
            amount=pack.price,
            currency=pack.currency,
            payment_method=payment_method,
            provider=provider,
            status=ORDER_PENDING,
            credits=pack.credits,
        )
        self.db.add(order)
        self.db.flush()
        # the order id doubles as the processor reference
        order.processor_reference = order.order_id
        order.raw_processor_payload = {"packId": pack.id, "reference": order.order_id}
        self.db.flush()
        logger.info(
            "order_created",
            extra={"order_id": order.order_id, "client_id": client_id, "credits": pack.credits},
        )
        return order

    def _validate(self, client_id: str, pack_id: str | None) -> tuple[str, CreditPack]:
        client_id = (client_id or "").strip()
        if not client_id:
            raise CheckoutError("clientId required")
        if not pack_id:
            raise CheckoutError("packId required")
        pack = self.get_pack(pack_id)
        if not pack or not pack.enabled:
            raise CheckoutError("invalid packId")
        return client_id, pack

    def start_paystack_checkout(
        self,
        client_id: str,
        pack_id: str,
        email: str | None = None,
        payment_method: str = "card",
        callback_url: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a pending order and initialize a Paystack transaction for it.
        Commits the order before calling Paystack so a fast webhook can find it.
        """
        client_id, pack = self._validate(client_id, pack_id)
        if self.paystack is None:
            raise CheckoutError("paystack is not configured")

        email = (email or "").strip() or None
        self.get_or_create_customer(client_id, email)
        order = self.create_pending_order(client_id, pack, payment_method)
        self.db.commit()

        try:
            auth = self.paystack.initialize_transaction(
                # Paystack requires an email; synthesize one for phone-only customers
                email=email or f"{client_id}@local.invalid",
                amount_minor=to_minor_units(pack.price),
                reference=order.order_id,
                currency=pack.currency,
                callback_url=callback_url,
                metadata={"clientId": client_id, "packId": pack.id, "orderId": order.order_id, "credits": pack.credits},
                channels=PAYSTACK_CHANNELS.get(payment_method),
            )
        except PaystackError as e:
            order.status = ORDER_FAILED
            order.raw_processor_payload = {"error": str(e), "reference": order.order_id}
            self.db.commit()
            logger.warning("paystack_init_failed", extra={"order_id": order.order_id, "error": str(e)})
            raise

        order.raw_processor_payload = {**auth, "reference": auth.get("reference") or order.order_id}
        if auth.get("reference"):
            order.processor_reference = auth["reference"]
        self.db.commit()
        return {
            "success": True,
            "orderId": order.order_id,
            "reference": auth.get("reference") or order.order_id,
            "authorization_url": auth.get("authorization_url"),
            "access_code": auth.get("access_code"),
        }

    def start_stripe_checkout(
        self,
        client_id: str,
        pack_id: str,
        email: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a pending Stripe order and a Checkout Session for it.
        The webhook finds the order through `client_reference_id`; the session id
        is kept as the processor reference.
        """
        client_id, pack = self._validate(client_id, pack_id)
        if self.stripe_checkout is None:
            raise CheckoutError("stripe is not configured")

        email = (email or "").strip() or None
        self.get_or_create_customer(client_id, email)
        order = self.create_pending_order(client_id, pack, "card", provider=PROVIDER_STRIPE)
        self.db.commit()

        try:
            session = self.stripe_checkout.create_session(
                order_id=order.order_id,
                amount_minor=to_minor_units(pack.price),
                currency=pack.currency,
                product_name=f"{pack.name} ({pack.credits} credits)",
                metadata={"clientId": client_id, "packId": pack.id, "orderId": order.order_id, "credits": pack.credits},
                customer_email=email,
            )
        except StripeCheckoutError as e:
            order.status = ORDER_FAILED
            order.raw_processor_payload = {"error": str(e), "reference": order.order_id}
            self.db.commit()
            raise

        order.processor_reference = session["id"]
        order.raw_processor_payload = {"sessionId": session["id"], "url": session["url"], "reference": order.order_id}
        self.db.commit()
        logger.info("stripe_session_created", extra={"order_id": order.order_id, "reference": session["id"]})
        return {
            "success": True,
            "orderId": order.order_id,
            "sessionId": session["id"],
            "url": session["url"],
        }
