"""
CreditLedger - the only purchase-driven increment path for customers.credits.

Preferred path is a single `credits = credits + :amount` UPDATE. If that
statement fails at the storage layer, a bounded compare-and-swap loop is used
instead (read, then UPDATE ... WHERE credits = :seen). The CAS path is weaker:
under sustained contention it gives up after `max_attempts` and reports
failure, but it never overwrites a concurrent increment.
"""
import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopkit.models.customer import Customer
from shopkit.utils.metrics import credits_granted_total

logger = logging.getLogger(__name__)


class CreditPath(str, enum.Enum):
    ATOMIC = "atomic"
    CAS = "cas"


@dataclass(frozen=True)
class CreditResult:
    ok: bool
    path: CreditPath | None = None
    error: str | None = None  # customer-not-found / invalid-amount / cas-contention / storage-error


class CreditLedger:
    def __init__(self, db: Session, max_attempts: int = 3) -> None:
        self.db = db
        self.max_attempts = max_attempts

    def add_credits(self, client_id: str, amount: int) -> CreditResult:
        """Runs inside the caller's transaction (savepoints only); the caller commits."""
        if amount <= 0:
            return CreditResult(ok=False, error="invalid-amount")

        try:
            updated = self._atomic_increment(client_id, amount)
        except SQLAlchemyError as e:
            logger.warning(
                "credit_atomic_increment_failed",
                extra={"client_id": client_id, "credits": amount, "error": str(e)},
            )
            return self._compare_and_swap(client_id, amount)

        if not updated:
            logger.error("credit_customer_not_found", extra={"client_id": client_id, "credits": amount})
            return CreditResult(ok=False, path=CreditPath.ATOMIC, error="customer-not-found")

        credits_granted_total.labels(path=CreditPath.ATOMIC.value).inc(amount)
        logger.info("credits_added", extra={"client_id": client_id, "credits": amount, "outcome": "atomic"})
        return CreditResult(ok=True, path=CreditPath.ATOMIC)

    def get_balance(self, client_id: str) -> int | None:
        return self.db.execute(
            select(Customer.credits).where(Customer.client_id == client_id)
        ).scalar_one_or_none()

    def _atomic_increment(self, client_id: str, amount: int) -> bool:
        with self.db.begin_nested():
            result = self.db.execute(
                update(Customer)
                .where(Customer.client_id == client_id)
                .values(credits=Customer.credits + amount)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def _compare_and_swap(self, client_id: str, amount: int) -> CreditResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.db.begin_nested():
                    current = self.db.execute(
                        select(Customer.credits).where(Customer.client_id == client_id)
                    ).scalar_one_or_none()
                    if current is None:
                        logger.error("credit_customer_not_found", extra={"client_id": client_id, "credits": amount})
                        return CreditResult(ok=False, path=CreditPath.CAS, error="customer-not-found")
                    result = self.db.execute(
                        update(Customer)
                        .where(Customer.client_id == client_id, Customer.credits == current)
                        .values(credits=current + amount)
                        .execution_options(synchronize_session=False)
                    )
            except SQLAlchemyError as e:
                logger.error(
                    "credit_cas_failed",
                    extra={"client_id": client_id, "credits": amount, "attempt": attempt, "error": str(e)},
                )
                return CreditResult(ok=False, path=CreditPath.CAS, error="storage-error")

            if result.rowcount == 1:
                credits_granted_total.labels(path=CreditPath.CAS.value).inc(amount)
                logger.warning(
                    "credits_added",
                    extra={"client_id": client_id, "credits": amount, "outcome": "cas", "attempt": attempt},
                )
                return CreditResult(ok=True, path=CreditPath.CAS)
            logger.info("credit_cas_conflict", extra={"client_id": client_id, "attempt": attempt})

        return CreditResult(ok=False, path=CreditPath.CAS, error="cas-contention")
