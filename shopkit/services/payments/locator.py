"""
Order lookup for inbound notifications.

The processor, the client app and order creation do not agree on which field
carries the correlation key (card initialize, mobile money charge, manual
reconciliation), so strategies are tried in a fixed priority order.
"""
import enum
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopkit.models.order import ORDER_PENDING, Order
from shopkit.services.payments.errors import ReconciliationStorageError

logger = logging.getLogger(__name__)


class LocateStrategy(str, enum.Enum):
    PROCESSOR_REFERENCE = "processor_reference"
    ORDER_ID = "order_id"
    PAYLOAD_REFERENCE = "payload_reference"
    CLIENT_PENDING = "client_pending"


@dataclass(frozen=True)
class LocateResult:
    order: Order
    strategy: LocateStrategy


class OrderLocator:
    def __init__(self, db: Session) -> None:
        self.db = db

    def locate(self, reference: str | None, client_id: str | None) -> LocateResult | None:
        """First hit wins. Raises ReconciliationStorageError if the store fails."""
        try:
            return self._locate(reference, client_id)
        except SQLAlchemyError as e:
            logger.error(
                "order_lookup_failed",
                extra={"reference": reference, "client_id": client_id, "error": str(e)},
            )
            raise ReconciliationStorageError("order lookup failed") from e

    def _locate(self, reference: str | None, client_id: str | None) -> LocateResult | None:
        if reference:
            order = (
                self.db.query(Order)
                .filter(Order.processor_reference == reference)
                .order_by(Order.created_at.desc())
                .first()
            )
            if order:
                return self._hit(order, LocateStrategy.PROCESSOR_REFERENCE, reference)

            order = self.db.query(Order).filter(Order.order_id == reference).one_or_none()
            if order:
                return self._hit(order, LocateStrategy.ORDER_ID, reference)

            order = (
                self.db.query(Order)
                .filter(Order.raw_processor_payload["reference"].as_string() == reference)
                .order_by(Order.created_at.desc())
                .first()
            )
            if order:
                return self._hit(order, LocateStrategy.PAYLOAD_REFERENCE, reference)

        if client_id:
            order = (
                self.db.query(Order)
                .filter(Order.client_id == client_id, Order.status == ORDER_PENDING)
                .order_by(Order.created_at.desc())
                .first()
            )
            if order:
                return self._hit(order, LocateStrategy.CLIENT_PENDING, reference)

        return None

    @staticmethod
    def _hit(order: Order, strategy: LocateStrategy, reference: str | None) -> LocateResult:
        logger.info(
            "order_located",
            extra={"order_id": order.order_id, "strategy": strategy.value, "reference": reference},
        )
        return LocateResult(order=order, strategy=strategy)
