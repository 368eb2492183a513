"""
CreditPack - credit bundles offered at checkout.
Order of display is order_index.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from shopkit.db.base import Base


class CreditPack(Base):
    __tablename__ = "credit_packs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)   # major units
    currency = Column(String, nullable=False, default="KES")
    enabled = Column(Boolean, nullable=False, default=True)
    order_index = Column(Integer, nullable=False, default=0)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
