"""
PaymentEvent - append-only log of processed processor notifications.
event_id is unique: the insert itself is the idempotency gate.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String

from shopkit.db.base import Base, JSONType


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    event_id = Column(String, unique=True, nullable=False)
    provider = Column(String, nullable=False)          # paystack / stripe
    reference = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=True)          # charge.success / checkout.session.completed / verify
    raw_payload = Column(JSONType, nullable=True)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
