#!/usr/bin/env python3
"""
Create tables and seed default credit packs.
Запуск из корня проекта: python -m scripts.init_db
"""
import logging

from shopkit.core.config import settings
from shopkit.core.logging import configure_logging
from shopkit.db.base import Base
from shopkit.db.session import SessionLocal, engine
from shopkit.models import customer, order, pack, payment_event  # noqa: F401  (register tables)
from shopkit.services.payments.checkout import CheckoutService

logger = logging.getLogger("init_db")


def main():
    configure_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        added = CheckoutService(db).seed_default_packs(currency=settings.paystack_default_currency)
        db.commit()
        logger.info("db_initialized", extra={"note": f"packs_added={added}"})
    finally:
        db.close()


if __name__ == "__main__":
    main()
