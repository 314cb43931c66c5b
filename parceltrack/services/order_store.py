"""
Order store: persistence boundary for tracking fields and the embedded status history.

Every write is scoped to a single order row and guarded by the row's version
column. On a version conflict the mutation is re-applied against a fresh copy
of the row, so concurrent writers never drop each other's history entries.
"""
import logging
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from parceltrack.errors import OrderNotFound
from parceltrack.models import Order, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WRITE_ATTEMPTS = 3


class OrderStore:
    def __init__(self, db: Session, write_attempts: int = DEFAULT_WRITE_ATTEMPTS):
        self.db = db
        self.write_attempts = write_attempts

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def select_for_reconciliation(self, limit: int = 100) -> List[Order]:
        """
        Orders with a carrier shipment that are not in a terminal status,
        least recently checked first (never-checked orders lead).
        """
        return (
            self.db.query(Order)
            .filter(
                Order.carrier_shipment_id.isnot(None),
                ~Order.status.in_(list(TERMINAL_STATUSES)),
            )
            .order_by(Order.tracking_last_checked_at.asc().nullsfirst(), Order.created_at.asc())
            .limit(limit)
            .all()
        )

    def update(self, order_id: str, mutate: Callable[[Order], T]) -> T:
        """
        Apply mutate to the order and commit. Retries on optimistic-lock conflicts.

        Raises:
            OrderNotFound: the order no longer exists
            StaleDataError: conflicts persisted through every attempt
        """
        for attempt in range(1, self.write_attempts + 1):
            order = self.db.get(Order, order_id, populate_existing=attempt > 1)
            if order is None:
                raise OrderNotFound(order_id)
            result = mutate(order)
            try:
                self.db.commit()
                return result
            except StaleDataError:
                self.db.rollback()
                if attempt == self.write_attempts:
                    logger.error("Order %s: version conflict persisted after %s attempts", order_id, attempt)
                    raise
                logger.warning("Order %s: concurrent update detected, retrying (attempt %s)", order_id, attempt)
            except SQLAlchemyError:
                self.db.rollback()
                raise
        raise RuntimeError("unreachable")  # pragma: no cover
