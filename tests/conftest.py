import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopkit.db.base import Base
from shopkit.models.customer import Customer
from shopkit.models.order import Order
from shopkit.models.pack import CreditPack
from shopkit.models.payment_event import PaymentEvent  # noqa: F401
from shopkit.services.payments.reconciliation import ReconciliationConfig


PAYSTACK_SECRET = "sk_test_0123456789abcdef"
STRIPE_SECRET = "whsec_test_secret"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite: let SQLAlchemy emit BEGIN itself so SAVEPOINT/rollback behave like PostgreSQL
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def config():
    return ReconciliationConfig(
        paystack_secret_key=PAYSTACK_SECRET,
        stripe_webhook_secret=STRIPE_SECRET,
        stripe_signature_tolerance=300,
        credit_cas_max_attempts=3,
    )


@pytest.fixture
def add_customer(db):
    def _add(client_id="c1", credits=0):
        customer = Customer(client_id=client_id, credits=credits)
        db.add(customer)
        db.commit()
        return customer

    return _add


@pytest.fixture
def add_order(db):
    def _add(order_id="order_42", age_minutes=0, **kwargs):
        values = {
            "client_id": "c1",
            "credits": 10,
            "status": "pending",
            "provider": "paystack",
            "payment_method": "card",
            "created_at": datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
        }
        values.update(kwargs)
        order = Order(order_id=order_id, **values)
        db.add(order)
        db.commit()
        return order

    return _add


@pytest.fixture
def add_pack(db):
    def _add(pack_id="starter", credits=10, price="100.00", enabled=True):
        from decimal import Decimal

        pack = CreditPack(id=pack_id, name=pack_id.title(), credits=credits, price=Decimal(price), currency="KES", enabled=enabled)
        db.add(pack)
        db.commit()
        return pack

    return _add


def sign_paystack(raw: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest()


def sign_stripe(raw: bytes, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp if timestamp is not None else int(datetime.now(timezone.utc).timestamp())
    signed = f"{ts}.".encode() + raw
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.fixture
def paystack_event():
    """Builds a signed Paystack webhook: returns (raw_body, signature)."""

    def _build(reference="ref_42", event_id="evt_1", event="charge.success", status="success", metadata=None):
        body = {"event": event, "data": {"reference": reference, "status": status, "metadata": metadata or {}}}
        if event_id is not None:
            body["id"] = event_id
        raw = json.dumps(body, separators=(",", ":")).encode()
        return raw, sign_paystack(raw)

    return _build


@pytest.fixture
def stripe_event():
    def _build(event_id="evt_stripe_1", order_id="order_42", payment_status="paid", metadata=None,
               event_type="checkout.session.completed"):
        body = {
            "id": event_id,
            "type": event_type,
            "data": {
                "object": {
                    "id": "cs_test_123",
                    "client_reference_id": order_id,
                    "payment_status": payment_status,
                    "metadata": metadata or {},
                }
            },
        }
        raw = json.dumps(body).encode()
        return raw, sign_stripe(raw)

    return _build
