"""
Order model - one row per checkout attempt.
Created in `pending` by checkout initiation; finalized only by ReconciliationService.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from shopkit.db.base import Base, JSONType


ORDER_PENDING = "pending"
ORDER_COMPLETED = "completed"
ORDER_FAILED = "failed"

CREDIT_PENDING = "pending"
CREDIT_APPLIED = "applied"
CREDIT_FAILED = "failed"
CREDIT_SKIPPED = "skipped"


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    client_id = Column(String, nullable=True, index=True)
    pack_id = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)            # major units (e.g. 300.00 KES)
    currency = Column(String, nullable=True)
    payment_method = Column(String, nullable=False, default="card")  # card / mpesa / manual
    provider = Column(String, nullable=False, default="paystack")    # paystack / stripe
    # pending / completed / failed. `paid` is only written by the external manual mark-paid
    # flow (proof of payment, no credit); such orders are still finalized and credited here.
    status = Column(String, nullable=False, default=ORDER_PENDING, index=True)
    processor_reference = Column(String, nullable=True, index=True)
    credits = Column(Integer, nullable=True)                  # credits this order grants
    raw_processor_payload = Column(JSONType, nullable=True)   # last processor response seen
    webhook_processed = Column(Boolean, nullable=False, default=False)
    # applied / failed / skipped after finalization; failed rows need manual remediation
    credit_status = Column(String, nullable=False, default=CREDIT_PENDING)
    credit_note = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def is_finalized(self) -> bool:
        return bool(self.webhook_processed) or self.status == ORDER_COMPLETED
