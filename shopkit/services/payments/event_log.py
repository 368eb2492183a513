import enum
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shopkit.models.payment_event import PaymentEvent

logger = logging.getLogger(__name__)


class RecordResult(str, enum.Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    ERROR = "error"


class EventLog:
    """
    Idempotency ledger over payment_events.

    The insert runs in a savepoint of the caller's transaction and is not
    committed here: the notification's record and its side effects commit
    together, and a rolled-back (retry-eligible) attempt leaves no record
    behind. A concurrent insert of the same event_id blocks on the unique
    index and then fails with IntegrityError, which is reported as DUPLICATE.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def record_event(
        self,
        event_id: str,
        reference: str | None,
        event_type: str | None,
        payload: dict[str, Any] | None,
        provider: str,
    ) -> RecordResult:
        try:
            with self.db.begin_nested():
                self.db.add(
                    PaymentEvent(
                        event_id=event_id,
                        provider=provider,
                        reference=reference,
                        event_type=event_type,
                        raw_payload=payload,
                    )
                )
                self.db.flush()
        except IntegrityError:
            logger.info(
                "payment_event_duplicate",
                extra={"event_id": event_id, "reference": reference, "provider": provider},
            )
            return RecordResult.DUPLICATE
        except SQLAlchemyError as e:
            # Not fatal: the notification is still processed, only without the dedup guarantee.
            logger.warning(
                "payment_event_insert_failed",
                extra={"event_id": event_id, "reference": reference, "error": str(e)},
            )
            return RecordResult.ERROR
        return RecordResult.INSERTED

    def get(self, event_id: str) -> PaymentEvent | None:
        return self.db.query(PaymentEvent).filter(PaymentEvent.event_id == event_id).one_or_none()
