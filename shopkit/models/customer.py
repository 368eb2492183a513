from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from shopkit.db.base import Base


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_customers_credits_non_negative"),)

    # chosen by the client app, stable across sessions
    client_id = Column(String, primary_key=True)
    credits = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
