"""
ReconciliationService - turns a processor notification into an exactly-once credit.

Flow per notification (one DB transaction):
    verify signature -> record event (idempotency gate) -> skip non-success
    -> locate order -> conditional finalize -> credit customer -> commit

Only failures that a retry can fix (storage errors before the commit,
processor timeouts on verify) map to a retry-eligible status. Duplicates,
ignored events, unknown orders, already-processed orders and
"finalized but not credited" are acknowledged with 200 and a `note`.
Partially completed orders keep credit_status="failed" for remediation.
"""
import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopkit.core.config import Settings
from shopkit.models.order import (
    CREDIT_APPLIED,
    CREDIT_FAILED,
    CREDIT_SKIPPED,
    ORDER_COMPLETED,
    Order,
)
from shopkit.services.payments.credits import CreditLedger
from shopkit.services.payments.errors import (
    PaystackError,
    PaystackTimeoutError,
    PaystackUnavailableError,
    ReconciliationStorageError,
)
from shopkit.services.payments.event_log import EventLog, RecordResult
from shopkit.services.payments.locator import OrderLocator
from shopkit.services.payments.notifications import (
    PROVIDER_PAYSTACK,
    PROVIDER_STRIPE,
    PaymentNotification,
    parse_paystack_event,
    parse_paystack_verification,
    parse_stripe_event,
)
from shopkit.services.payments.paystack import PaystackClient
from shopkit.services.payments.signatures import verify_hmac_signature, verify_stripe_signature
from shopkit.utils.metrics import reconciliation_anomalies_total

logger = logging.getLogger(__name__)


class ReconciliationState(str, enum.Enum):
    REJECTED = "rejected"              # bad signature / missing secret
    INVALID = "invalid"                # body is not a JSON object
    DEDUPED_OUT = "deduped_out"
    IGNORED = "ignored"                # not a successful charge
    NOT_VERIFIED = "not_verified"      # verify API: charge not successful (yet)
    ORDER_NOT_FOUND = "order_not_found"
    ALREADY_DONE = "already_done"
    NO_CREDIT = "no_credit"            # finalized; no client id or credit amount
    CREDITED = "credited"
    CREDIT_FAILED = "credit_failed"    # finalized; credit not applied
    RETRY = "retry"


class ReconciliationResult(BaseModel):
    state: ReconciliationState
    http_status: int = 200
    note: str | None = None
    verified: bool | None = None
    order: dict[str, Any] | None = None
    processor_payload: dict[str, Any] | None = None

    model_config = {"frozen": True}

    @property
    def retryable(self) -> bool:
        return self.http_status >= 500

    def to_response(self, include_order: bool = True) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": self.http_status < 400}
        if self.verified is not None:
            body["verified"] = self.verified
        if self.note:
            body["note"] = self.note
        if include_order and self.order is not None:
            body["order"] = self.order
        if self.processor_payload is not None:
            body["paystack"] = self.processor_payload
        return body


@dataclass(frozen=True)
class ReconciliationConfig:
    paystack_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance: int = 300
    credit_cas_max_attempts: int = 3

    @classmethod
    def from_settings(cls, s: Settings) -> "ReconciliationConfig":
        return cls(
            paystack_secret_key=s.paystack_secret_key,
            stripe_webhook_secret=s.stripe_webhook_secret,
            stripe_signature_tolerance=s.stripe_signature_tolerance,
            credit_cas_max_attempts=s.credit_cas_max_attempts,
        )


def serialize_order(order: Order) -> dict[str, Any]:
    return {
        "orderId": order.order_id,
        "clientId": order.client_id,
        "packId": order.pack_id,
        "amount": float(order.amount) if order.amount is not None else None,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "provider": order.provider,
        "status": order.status,
        "reference": order.processor_reference,
        "credits": order.credits,
        "creditStatus": order.credit_status,
        "creditNote": order.credit_note,
        "webhookProcessed": bool(order.webhook_processed),
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "processedAt": order.processed_at.isoformat() if order.processed_at else None,
    }


class ReconciliationService:
    def __init__(
        self,
        db: Session,
        config: ReconciliationConfig,
        paystack: PaystackClient | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.paystack = paystack
        self.event_log = EventLog(db)
        self.locator = OrderLocator(db)
        self.ledger = CreditLedger(db, max_attempts=config.credit_cas_max_attempts)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_webhook(self, provider: str, raw_body: bytes, signature: str | None) -> ReconciliationResult:
        """Verify, parse and reconcile a raw webhook body."""
        if provider == PROVIDER_PAYSTACK:
            secret = self.config.paystack_secret_key
        elif provider == PROVIDER_STRIPE:
            secret = self.config.stripe_webhook_secret
        else:
            raise ValueError(f"unknown provider: {provider}")

        if not secret:
            logger.error("webhook_secret_not_configured", extra={"provider": provider})
            return ReconciliationResult(state=ReconciliationState.REJECTED, http_status=401, note="misconfigured")

        if provider == PROVIDER_PAYSTACK:
            valid = verify_hmac_signature(raw_body, signature, secret)
        else:
            valid = verify_stripe_signature(raw_body, signature, secret, self.config.stripe_signature_tolerance)
        if not valid:
            logger.warning("webhook_signature_mismatch", extra={"provider": provider})
            return ReconciliationResult(state=ReconciliationState.REJECTED, http_status=400, note="invalid-signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            logger.warning("webhook_invalid_json", extra={"provider": provider})
            return ReconciliationResult(state=ReconciliationState.INVALID, http_status=400, note="invalid-json")
        if not isinstance(event, dict):
            return ReconciliationResult(state=ReconciliationState.INVALID, http_status=400, note="invalid-json")

        if provider == PROVIDER_PAYSTACK:
            notification = parse_paystack_event(event, raw_body)
        else:
            notification = parse_stripe_event(event, raw_body)
        return self.reconcile(notification)

    def verify_reference(self, reference: str) -> ReconciliationResult:
        """Manual verify: ask Paystack about `reference`, then run the shared reconcile path."""
        reference = (reference or "").strip()
        if not reference:
            return ReconciliationResult(state=ReconciliationState.INVALID, http_status=400, note="missing-reference")
        if not self.config.paystack_secret_key or self.paystack is None:
            logger.error("paystack_not_configured", extra={"reference": reference})
            return ReconciliationResult(state=ReconciliationState.REJECTED, http_status=401, note="misconfigured")

        try:
            data = self.paystack.verify_transaction(reference)
        except PaystackTimeoutError:
            return ReconciliationResult(state=ReconciliationState.RETRY, http_status=504, note="paystack-timeout")
        except PaystackUnavailableError:
            return ReconciliationResult(state=ReconciliationState.RETRY, http_status=503, note="paystack-unavailable")
        except PaystackError as e:
            logger.warning("paystack_verify_failed", extra={"reference": reference, "error": str(e)})
            return ReconciliationResult(state=ReconciliationState.RETRY, http_status=502, note="paystack-error")

        notification = parse_paystack_verification(data, reference)
        if not notification.is_successful_charge:
            logger.info("paystack_verify_not_successful", extra={"reference": reference})
            return ReconciliationResult(
                state=ReconciliationState.NOT_VERIFIED,
                verified=False,
                processor_payload=data,
            )

        result = self.reconcile(notification, include_order=True)
        if result.retryable:
            return result
        return result.model_copy(update={"verified": True})

    # ------------------------------------------------------------------
    # Shared path
    # ------------------------------------------------------------------

    def reconcile(self, notification: PaymentNotification, include_order: bool = False) -> ReconciliationResult:
        """Runs the post-verification state machine; commits or rolls back the transaction."""
        try:
            result = self._reconcile(notification, include_order)
            self.db.commit()
        except (ReconciliationStorageError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(
                "reconciliation_storage_error",
                extra={
                    "provider": notification.provider,
                    "event_id": notification.dedup_key,
                    "reference": notification.reference,
                    "error": str(e),
                },
            )
            return ReconciliationResult(state=ReconciliationState.RETRY, http_status=500, note="storage-error")

        return result

    def _reconcile(self, n: PaymentNotification, include_order: bool) -> ReconciliationResult:
        log_extra = {
            "provider": n.provider,
            "event_id": n.dedup_key,
            "event_type": n.event_type,
            "reference": n.reference,
            "client_id": n.client_id,
        }

        recorded = self.event_log.record_event(n.dedup_key, n.reference, n.event_type, n.payload, n.provider)
        if recorded is RecordResult.DUPLICATE:
            logger.info("notification_duplicate", extra=log_extra)
            return ReconciliationResult(
                state=ReconciliationState.DEDUPED_OUT,
                note="duplicate",
                order=self._current_order(n) if include_order else None,
            )
        if recorded is RecordResult.ERROR:
            reconciliation_anomalies_total.labels(kind="event_log_error").inc()

        if not n.is_successful_charge:
            logger.info("notification_ignored", extra=log_extra)
            return ReconciliationResult(state=ReconciliationState.IGNORED, note="ignored")

        located = self.locator.locate(n.reference, n.client_id)
        if located is None:
            reconciliation_anomalies_total.labels(kind="order_not_found").inc()
            logger.warning("order_not_found", extra=log_extra)
            return ReconciliationResult(state=ReconciliationState.ORDER_NOT_FOUND, note="order-not-found")

        order = located.order
        if order.is_finalized():
            logger.info("order_already_processed", extra={**log_extra, "order_id": order.order_id})
            return ReconciliationResult(
                state=ReconciliationState.ALREADY_DONE,
                note="order-already-processed",
                order=serialize_order(order),
            )

        return self._finalize_and_credit(order, n)

    def _finalize_and_credit(self, order: Order, n: PaymentNotification) -> ReconciliationResult:
        extra = {"provider": n.provider, "event_id": n.dedup_key, "order_id": order.order_id, "reference": n.reference}
        if not self._finalize(order, n):
            # another delivery finalized this order between our read and our write
            logger.info("order_finalize_lost_race", extra=extra)
            return ReconciliationResult(
                state=ReconciliationState.ALREADY_DONE,
                note="order-already-processed",
                order=serialize_order(self._reload(order)),
            )

        credits_to_add = order.credits or n.credits
        if not order.client_id:
            return self._no_credit(order, "no-client-id", extra)
        if not credits_to_add:
            return self._no_credit(order, "no-credits", extra)

        credit = self.ledger.add_credits(order.client_id, int(credits_to_add))
        if credit.ok:
            self._set_credit_status(order, CREDIT_APPLIED, None)
            logger.info("order_credited", extra={**extra, "client_id": order.client_id, "credits": credits_to_add})
            return ReconciliationResult(
                state=ReconciliationState.CREDITED,
                order=serialize_order(self._reload(order)),
            )

        self._set_credit_status(order, CREDIT_FAILED, credit.error)
        reconciliation_anomalies_total.labels(kind="credit_failed").inc()
        logger.error(
            "order_processed_no_credit",
            extra={**extra, "client_id": order.client_id, "credits": credits_to_add, "error": credit.error},
        )
        return ReconciliationResult(
            state=ReconciliationState.CREDIT_FAILED,
            note="processed-no-credit",
            order=serialize_order(self._reload(order)),
        )

    def _finalize(self, order: Order, n: PaymentNotification) -> bool:
        """Single conditional UPDATE; False when the order was already finalized."""
        values: dict[str, Any] = {
            "status": ORDER_COMPLETED,
            "webhook_processed": True,
            "processed_at": datetime.now(timezone.utc),
            "raw_processor_payload": n.payload,
        }
        if not order.processor_reference and n.processor_reference:
            values["processor_reference"] = n.processor_reference
        result = self.db.execute(
            update(Order)
            .where(
                Order.order_id == order.order_id,
                Order.webhook_processed.is_(False),
                Order.status != ORDER_COMPLETED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _no_credit(self, order: Order, note: str, extra: dict[str, Any]) -> ReconciliationResult:
        self._set_credit_status(order, CREDIT_SKIPPED, note)
        reconciliation_anomalies_total.labels(kind="no_credit").inc()
        logger.warning("order_processed_without_credit", extra={**extra, "note": note})
        return ReconciliationResult(
            state=ReconciliationState.NO_CREDIT,
            note=note,
            order=serialize_order(self._reload(order)),
        )

    def _set_credit_status(self, order: Order, status: str, note: str | None) -> None:
        self.db.execute(
            update(Order)
            .where(Order.order_id == order.order_id)
            .values(credit_status=status, credit_note=note)
            .execution_options(synchronize_session=False)
        )

    def _reload(self, order: Order) -> Order:
        # the conditional UPDATEs bypass the identity map
        return self.db.get(Order, order.order_id, populate_existing=True) or order

    def _current_order(self, n: PaymentNotification) -> dict[str, Any] | None:
        """Order snapshot for duplicate answers (read-only, best effort)."""
        try:
            with self.db.begin_nested():
                located = self.locator.locate(n.reference, None)
        except ReconciliationStorageError:
            return None
        return serialize_order(located.order) if located else None
