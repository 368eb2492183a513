"""ReconciliationService: idempotency, at-most-once crediting, response policy."""
import json
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from shopkit.models.customer import Customer
from shopkit.models.order import Order
from shopkit.models.payment_event import PaymentEvent
from shopkit.services.payments.errors import (
    PaystackResponseError,
    PaystackTimeoutError,
    PaystackUnavailableError,
)
from shopkit.services.payments.event_log import RecordResult
from shopkit.services.payments.locator import LocateResult, LocateStrategy
from shopkit.services.payments.notifications import PROVIDER_PAYSTACK, PROVIDER_STRIPE, parse_paystack_event
from shopkit.services.payments.signatures import compute_hmac_sha512
from shopkit.services.payments.reconciliation import (
    ReconciliationConfig,
    ReconciliationService,
    ReconciliationState,
)


@pytest.fixture
def service(db, config):
    return ReconciliationService(db, config)


@pytest.fixture
def purchase(add_customer, add_order):
    """order_42: client c1, 10 credits, pending, processor reference ref_42."""
    add_customer("c1", credits=0)
    return add_order("order_42", client_id="c1", credits=10, processor_reference="ref_42")


def _balance(db, client_id="c1"):
    db.expire_all()
    return db.get(Customer, client_id).credits


def _order(db, order_id="order_42"):
    db.expire_all()
    return db.get(Order, order_id)


class TestFreshPurchaseAndReplay:
    def test_fresh_purchase_credits_once(self, db, service, purchase, paystack_event):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_1")

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 200
        assert result.state is ReconciliationState.CREDITED
        assert result.to_response(include_order=False) == {"ok": True}
        order = _order(db)
        assert order.status == "completed"
        assert order.webhook_processed is True
        assert order.processed_at is not None
        assert order.credit_status == "applied"
        assert _balance(db) == 10

    def test_replay_is_acknowledged_without_side_effect(self, db, service, purchase, paystack_event):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_1")
        service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        replay = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert replay.http_status == 200
        assert replay.state is ReconciliationState.DEDUPED_OUT
        assert replay.note == "duplicate"
        assert _balance(db) == 10

    @pytest.mark.parametrize("deliveries", [1, 2, 5])
    def test_n_deliveries_credit_exactly_once(self, db, service, purchase, paystack_event, deliveries):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_n")
        for _ in range(deliveries):
            assert service.handle_webhook(PROVIDER_PAYSTACK, raw, sig).http_status == 200
        assert _balance(db) == 10
        assert db.query(PaymentEvent).filter(PaymentEvent.event_id == "evt_n").count() == 1

    def test_different_event_same_order_is_already_done(self, db, service, purchase, paystack_event):
        raw1, sig1 = paystack_event(reference="ref_42", event_id="evt_a")
        raw2, sig2 = paystack_event(reference="ref_42", event_id="evt_b")
        service.handle_webhook(PROVIDER_PAYSTACK, raw1, sig1)

        second = service.handle_webhook(PROVIDER_PAYSTACK, raw2, sig2)

        assert second.state is ReconciliationState.ALREADY_DONE
        assert second.note == "order-already-processed"
        assert _balance(db) == 10


class TestConcurrency:
    def test_concurrent_finalization_credits_once(self, db, service, purchase):
        """Both deliveries pass the gate (event log unavailable) and both saw the order as pending."""
        stale = Order(
            order_id="order_42",
            client_id="c1",
            credits=10,
            status="pending",
            webhook_processed=False,
            processor_reference="ref_42",
        )
        notification = parse_paystack_event(
            {"id": "evt_race", "event": "charge.success", "data": {"reference": "ref_42", "status": "success"}}
        )

        with patch.object(service.event_log, "record_event", return_value=RecordResult.ERROR), \
                patch.object(service.locator, "locate",
                             return_value=LocateResult(order=stale, strategy=LocateStrategy.PROCESSOR_REFERENCE)), \
                patch.object(service.ledger, "add_credits", wraps=service.ledger.add_credits) as add_credits:
            first = service.reconcile(notification)
            second = service.reconcile(notification)

        assert first.state is ReconciliationState.CREDITED
        assert second.state is ReconciliationState.ALREADY_DONE
        assert second.http_status == 200
        assert add_credits.call_count == 1
        assert _balance(db) == 10


class TestAnomalies:
    def test_unknown_reference_without_client(self, db, service, purchase, add_customer, paystack_event):
        add_customer("c2", credits=4)
        raw, sig = paystack_event(reference="does_not_exist", event_id="evt_x")

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 200
        assert result.state is ReconciliationState.ORDER_NOT_FOUND
        assert result.to_response() == {"ok": True, "note": "order-not-found"}
        assert _balance(db, "c1") == 0
        assert _balance(db, "c2") == 4
        assert _order(db).status == "pending"

    def test_no_credit_amount_is_not_fatal(self, db, service, add_customer, add_order, paystack_event):
        add_customer("c1", credits=0)
        add_order("order_nc", client_id="c1", credits=None, processor_reference="ref_nc")
        raw, sig = paystack_event(reference="ref_nc", event_id="evt_nc")

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 200
        assert result.state is ReconciliationState.NO_CREDIT
        assert result.note == "no-credits"
        order = _order(db, "order_nc")
        assert order.status == "completed"
        assert order.credit_status == "skipped"
        assert _balance(db) == 0

    def test_order_without_client_id(self, db, service, add_order, paystack_event):
        add_order("order_anon", client_id=None, credits=10, processor_reference="ref_anon")
        raw, sig = paystack_event(reference="ref_anon", event_id="evt_anon")

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 200
        assert result.note == "no-client-id"
        assert _order(db, "order_anon").credit_note == "no-client-id"

    def test_metadata_credits_used_when_order_has_none(self, db, service, add_customer, add_order, paystack_event):
        add_customer("c1", credits=1)
        add_order("order_meta", client_id="c1", credits=None, processor_reference="ref_meta")
        raw, sig = paystack_event(reference="ref_meta", event_id="evt_meta", metadata={"clientId": "c1", "credits": 5})

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.state is ReconciliationState.CREDITED
        assert _balance(db) == 6

    def test_credit_failure_is_annotated_and_queryable(self, db, service, add_order, paystack_event):
        add_order("order_ghost", client_id="ghost", credits=10, processor_reference="ref_ghost")
        raw, sig = paystack_event(reference="ref_ghost", event_id="evt_ghost")

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 200
        assert result.state is ReconciliationState.CREDIT_FAILED
        assert result.note == "processed-no-credit"
        failed = db.query(Order).filter(Order.credit_status == "failed").all()
        assert [o.order_id for o in failed] == ["order_ghost"]
        assert failed[0].status == "completed"
        assert failed[0].credit_note == "customer-not-found"

    def test_client_fallback_backfills_reference(self, db, service, add_customer, add_order, paystack_event):
        add_customer("c1", credits=0)
        add_order("order_fb", client_id="c1", credits=10, processor_reference=None)
        raw, sig = paystack_event(reference="T_MPESA_1", event_id="evt_fb", metadata={"clientId": "c1"})

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.state is ReconciliationState.CREDITED
        order = _order(db, "order_fb")
        assert order.processor_reference == "T_MPESA_1"
        assert order.raw_processor_payload["reference"] == "T_MPESA_1"


class TestRejection:
    def test_tampered_body_rejected_without_mutation(self, db, service, purchase, paystack_event):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_t")
        tampered = raw.replace(b"evt_t", b"evt_z")

        result = service.handle_webhook(PROVIDER_PAYSTACK, tampered, sig)

        assert result.http_status == 400
        assert result.state is ReconciliationState.REJECTED
        assert _order(db).status == "pending"
        assert db.query(PaymentEvent).count() == 0
        assert _balance(db) == 0

    def test_missing_secret_rejected(self, db, purchase, paystack_event):
        service = ReconciliationService(db, ReconciliationConfig(paystack_secret_key=""))
        raw, sig = paystack_event()

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 401
        assert _order(db).status == "pending"

    def test_invalid_json_after_valid_signature(self, service):
        raw = b"not json"

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, compute_hmac_sha512(raw, service.config.paystack_secret_key))

        assert result.http_status == 400
        assert result.state is ReconciliationState.INVALID

    def test_non_success_event_is_logged_and_ignored(self, db, service, purchase, paystack_event):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_fail", event="charge.failed", status="failed")

        result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert result.http_status == 200
        assert result.state is ReconciliationState.IGNORED
        assert db.query(PaymentEvent).filter(PaymentEvent.event_id == "evt_fail").count() == 1
        assert _order(db).status == "pending"


class TestRetry:
    def test_finalize_storage_error_is_retryable_and_retry_succeeds(self, db, service, purchase, paystack_event):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_retry")

        with patch.object(service, "_finalize", side_effect=OperationalError("UPDATE orders", {}, Exception("db down"))):
            failed = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert failed.http_status == 500
        assert failed.retryable is True
        assert db.query(PaymentEvent).count() == 0
        assert _order(db).status == "pending"

        retried = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)
        assert retried.state is ReconciliationState.CREDITED
        assert _balance(db) == 10


class TestStripe:
    def test_checkout_completed_credits(self, db, service, purchase, stripe_event):
        raw, sig = stripe_event(order_id="order_42")

        result = service.handle_webhook(PROVIDER_STRIPE, raw, sig)

        assert result.state is ReconciliationState.CREDITED
        assert _balance(db) == 10
        # order already had a processor reference; it is not overwritten
        assert _order(db).processor_reference == "ref_42"

    def test_unpaid_session_ignored(self, db, service, purchase, stripe_event):
        raw, sig = stripe_event(order_id="order_42", payment_status="unpaid")
        result = service.handle_webhook(PROVIDER_STRIPE, raw, sig)
        assert result.state is ReconciliationState.IGNORED
        assert _balance(db) == 0

    def test_bad_stripe_signature(self, service, purchase, stripe_event):
        raw, _ = stripe_event()
        result = service.handle_webhook(PROVIDER_STRIPE, raw, "t=1,v1=deadbeef")
        assert result.http_status == 400


class TestVerify:
    def _service(self, db, config, **paystack_behaviour):
        paystack = MagicMock()
        for name, value in paystack_behaviour.items():
            setattr(paystack.verify_transaction, name, value)
        return ReconciliationService(db, config, paystack=paystack)

    def test_verify_success_credits_and_returns_order(self, db, config, purchase):
        svc = self._service(db, config, return_value={"reference": "ref_42", "status": "success", "metadata": {}})

        result = svc.verify_reference("ref_42")

        assert result.http_status == 200
        assert result.verified is True
        body = result.to_response()
        assert body["ok"] is True and body["verified"] is True
        assert body["order"]["orderId"] == "order_42"
        assert body["order"]["creditStatus"] == "applied"
        assert _balance(db) == 10

    def test_repeated_verify_is_deduplicated(self, db, config, purchase):
        svc = self._service(db, config, return_value={"reference": "ref_42", "status": "success"})
        svc.verify_reference("ref_42")

        again = svc.verify_reference("ref_42")

        assert again.state is ReconciliationState.DEDUPED_OUT
        assert again.verified is True
        assert again.order["status"] == "completed"
        assert _balance(db) == 10

    def test_verify_after_webhook_is_noop(self, db, config, purchase, paystack_event):
        raw, sig = paystack_event(reference="ref_42", event_id="evt_1")
        svc = self._service(db, config, return_value={"reference": "ref_42", "status": "success"})
        svc.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        result = svc.verify_reference("ref_42")

        assert result.state is ReconciliationState.ALREADY_DONE
        assert result.verified is True
        assert _balance(db) == 10

    def test_verify_not_successful(self, db, config, purchase):
        svc = self._service(db, config, return_value={"reference": "ref_42", "status": "abandoned"})

        result = svc.verify_reference("ref_42")

        assert result.http_status == 200
        assert result.verified is False
        assert result.to_response()["paystack"]["status"] == "abandoned"
        assert _order(db).status == "pending"
        assert db.query(PaymentEvent).count() == 0

    @pytest.mark.parametrize(
        "error, status",
        [
            (PaystackTimeoutError("slow"), 504),
            (PaystackUnavailableError("open"), 503),
            (PaystackResponseError("Transaction reference not found", status_code=400), 502),
        ],
    )
    def test_verify_processor_failures_are_retryable(self, db, config, purchase, error, status):
        svc = self._service(db, config, side_effect=error)

        result = svc.verify_reference("ref_42")

        assert result.http_status == status
        assert result.retryable is True
        assert _order(db).status == "pending"
        assert db.query(PaymentEvent).count() == 0

    def test_verify_without_secret(self, db, purchase):
        svc = ReconciliationService(db, ReconciliationConfig(), paystack=MagicMock())
        assert svc.verify_reference("ref_42").http_status == 401


def test_response_body_is_json_serializable(db, service, purchase, paystack_event):
    raw, sig = paystack_event(reference="ref_42", event_id="evt_json")
    result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)
    json.dumps(result.to_response())


class TestBodyIdentity:
    """Bodies with neither an event id nor a reference are told apart by their content."""

    def test_distinct_charges_both_credited(self, db, service, add_customer, add_order, paystack_event):
        add_customer("c1", credits=0)
        add_customer("c2", credits=0)
        add_order("order_c1", client_id="c1", credits=10)
        add_order("order_c2", client_id="c2", credits=7)
        first = paystack_event(reference=None, event_id=None, metadata={"clientId": "c1"})
        second = paystack_event(reference=None, event_id=None, metadata={"clientId": "c2"})

        states = [service.handle_webhook(PROVIDER_PAYSTACK, raw, sig).state for raw, sig in (first, second)]

        assert states == [ReconciliationState.CREDITED, ReconciliationState.CREDITED]
        assert _balance(db, "c1") == 10
        assert _balance(db, "c2") == 7

    def test_same_body_replayed_is_duplicate(self, db, service, add_customer, add_order, paystack_event):
        add_customer("c1", credits=0)
        add_order("order_c1", client_id="c1", credits=10)
        raw, sig = paystack_event(reference=None, event_id=None, metadata={"clientId": "c1"})

        service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)
        replay = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

        assert replay.state is ReconciliationState.DEDUPED_OUT
        assert _balance(db, "c1") == 10


def test_manually_marked_paid_order_is_still_credited(db, service, add_customer, add_order, paystack_event):
    add_customer("c1", credits=0)
    add_order("order_manual", client_id="c1", credits=10, status="paid", payment_method="manual",
              processor_reference="ref_manual")
    raw, sig = paystack_event(reference="ref_manual", event_id="evt_manual")

    result = service.handle_webhook(PROVIDER_PAYSTACK, raw, sig)

    assert result.state is ReconciliationState.CREDITED
    assert _order(db, "order_manual").status == "completed"
    assert _balance(db) == 10


@pytest.mark.parametrize("reference", ["", "   "])
def test_verify_blank_reference_is_rejected(db, config, reference):
    paystack = MagicMock()
    result = ReconciliationService(db, config, paystack=paystack).verify_reference(reference)
    assert result.http_status == 400
    paystack.verify_transaction.assert_not_called()
