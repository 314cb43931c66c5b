"""
Tracking reconciler: re-derives order status from the carrier's current view.

Batch pass (scheduled): up to CARRIER_BATCH_LIMIT eligible orders, one carrier call,
per-order conditional writes. A carrier failure aborts the pass before any write.

Single pass (manual refresh): one order, same mapping and persistence, carrier
failures surface to the caller.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from parceltrack.config import settings
from parceltrack.errors import CarrierUnavailable, OrderNotFound
from parceltrack.models import Order, OrderStatus, is_terminal
from parceltrack.services.carrier_gateway import CarrierGateway, ShipmentSnapshot, get_carrier_gateway
from parceltrack.services.events import OrderStatusChanged, StatusEventBus, event_bus
from parceltrack.services.order_store import OrderStore
from parceltrack.services.status_mapper import map_status

logger = logging.getLogger(__name__)

SCHEDULED_NOTE = "scheduled reconciliation"
MANUAL_NOTE = "manual refresh"
NOT_FOUND_NOTE = "manual refresh: shipment not found at carrier"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive column value for output."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _entry_time(entry: dict) -> Optional[datetime]:
    try:
        stamp = datetime.fromisoformat(entry["timestamp"])
    except (KeyError, TypeError, ValueError):
        return None
    if stamp.tzinfo is not None:
        stamp = stamp.astimezone(timezone.utc).replace(tzinfo=None)
    return stamp


def append_history(order: Order, status: OrderStatus, now: datetime, note: str,
                   snapshot: Optional[ShipmentSnapshot]) -> datetime:
    """Append a status history entry; returns the entry time (never earlier than the last entry)."""
    history = list(order.status_history or [])
    stamp = now
    if history:
        last = _entry_time(history[-1])
        if last is not None and last > stamp:
            stamp = last
    history.append({
        "status": status.value,
        "timestamp": as_utc(stamp).isoformat(),
        "note": note,
        "carrierSnapshot": snapshot.to_dict() if snapshot else None,
    })
    # new list so the JSON column is flagged dirty
    order.status_history = history
    return stamp


@dataclass
class TrackingView:
    order_id: str
    tracking_reference: Optional[str]
    status: str
    tracking_last_checked_at: Optional[datetime]
    tracking_status_updated_at: Optional[datetime]
    tracking_events: List[dict] = field(default_factory=list)
    is_active: bool = True

    @classmethod
    def from_order(cls, order: Order) -> "TrackingView":
        status = OrderStatus(order.status)
        return cls(
            order_id=order.id,
            tracking_reference=order.tracking_number,
            status=status.value,
            tracking_last_checked_at=as_utc(order.tracking_last_checked_at),
            tracking_status_updated_at=as_utc(order.tracking_status_updated_at),
            tracking_events=list(order.status_history or []),
            is_active=not is_terminal(status),
        )


@dataclass
class BatchResult:
    selected: int = 0
    returned: int = 0
    updated: int = 0
    changed: int = 0
    missing: int = 0
    failed: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "selected": self.selected,
            "returned": self.returned,
            "updated": self.updated,
            "changed": self.changed,
            "missing": self.missing,
            "failed": self.failed,
            "error": self.error,
        }


class Reconciler:
    def __init__(
        self,
        store: OrderStore,
        gateway: CarrierGateway,
        events: Optional[StatusEventBus] = None,
        batch_limit: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.events = events
        self.batch_limit = batch_limit
        self.clock = clock

    async def run_batch(self) -> BatchResult:
        """
        Run one scheduled reconciliation pass. Never raises CarrierUnavailable:
        the pass is abandoned and retried on the next tick.
        """
        result = BatchResult()
        orders = self.store.select_for_reconciliation(self.batch_limit)
        result.selected = len(orders)
        if not orders:
            logger.info("No carrier shipments to reconcile")
            return result

        targets = defaultdict(list)
        for order in orders:
            targets[order.carrier_shipment_id].append(order.id)

        try:
            logger.info("Reconciling %s order(s) against the carrier", len(orders))
            snapshots = await self.gateway.fetch_shipments(list(targets))
        except CarrierUnavailable as e:
            logger.error("Carrier unavailable, batch abandoned until next run: %s", e)
            result.error = str(e)
            return result

        result.returned = len(snapshots)
        now = self.clock()
        seen = set()
        for snapshot in snapshots:
            order_ids = targets.get(snapshot.shipment_id)
            if not order_ids:
                logger.warning("Carrier returned unrequested shipment %s; ignoring", snapshot.shipment_id)
                continue
            seen.add(snapshot.shipment_id)
            for order_id in order_ids:
                try:
                    event = self._apply_snapshot(order_id, snapshot, now, SCHEDULED_NOTE)
                except (OrderNotFound, SQLAlchemyError) as e:
                    result.failed += 1
                    logger.error("Failed to persist reconciliation for order %s: %s", order_id, e)
                    continue
                result.updated += 1
                if event:
                    result.changed += 1
                    self._publish(event)

        # Not returned by the carrier: left untouched so they lead the next pass
        missing = [sid for sid in targets if sid not in seen]
        result.missing = sum(len(targets[sid]) for sid in missing)
        if missing:
            logger.info("Carrier omitted %s shipment(s): %s", len(missing), ", ".join(missing))

        logger.info(
            "Reconciliation pass done: selected=%s returned=%s updated=%s changed=%s missing=%s failed=%s",
            result.selected, result.returned, result.updated, result.changed, result.missing, result.failed,
        )
        return result

    async def run_single(self, order_id: str, requesting_user_id: Optional[str] = None) -> TrackingView:
        """
        Manual refresh of one order.

        Raises:
            OrderNotFound: missing order, foreign order, or no carrier shipment yet
            CarrierUnavailable: carrier call failed
        """
        order = self._load(order_id, requesting_user_id)
        shipment_id = order.carrier_shipment_id
        if not shipment_id:
            raise OrderNotFound(
                order_id,
                "No carrier shipment found for this order. Order may not have been submitted yet.",
            )

        snapshots = await self.gateway.fetch_shipments([shipment_id])
        snapshot = next((s for s in snapshots if s.shipment_id == shipment_id), None)
        now = self.clock()

        if snapshot is None:
            logger.warning("Order %s: carrier has no shipment %s", order_id, shipment_id)
            event = self.store.update(order_id, lambda o: self._mark_not_found(o, now))
        else:
            event = self._apply_snapshot(order_id, snapshot, now, MANUAL_NOTE)
        if event:
            self._publish(event)

        return TrackingView.from_order(self.store.get(order_id))

    def get_tracking(self, order_id: str, requesting_user_id: Optional[str] = None) -> TrackingView:
        """Current tracking view; read-only, no carrier call."""
        return TrackingView.from_order(self._load(order_id, requesting_user_id))

    def _load(self, order_id: str, requesting_user_id: Optional[str]) -> Order:
        order = self.store.get(order_id)
        # a foreign order is reported exactly like a missing one
        if order is None or (requesting_user_id and order.user_id != requesting_user_id):
            raise OrderNotFound(order_id)
        return order

    def _apply_snapshot(self, order_id: str, snapshot: ShipmentSnapshot, now: datetime,
                        note: str) -> Optional[OrderStatusChanged]:
        source = "manual" if note == MANUAL_NOTE else "scheduled"

        def mutate(order: Order) -> Optional[OrderStatusChanged]:
            old_status = OrderStatus(order.status)
            new_status = map_status(snapshot)
            event = None
            if new_status != old_status:
                order.tracking_status_updated_at = append_history(order, new_status, now, note, snapshot)
                event = OrderStatusChanged(
                    order_id=order.id,
                    old_status=old_status.value,
                    new_status=new_status.value,
                    tracking_number=snapshot.tracking_number or order.tracking_number,
                    source=source,
                )
            if snapshot.tracking_number and not order.tracking_number:
                order.tracking_number = snapshot.tracking_number
            order.status = new_status
            order.tracking_last_checked_at = now
            return event

        return self.store.update(order_id, mutate)

    def _mark_not_found(self, order: Order, now: datetime) -> Optional[OrderStatusChanged]:
        old_status = OrderStatus(order.status)
        event = None
        if old_status != OrderStatus.NOTFOUND:
            order.tracking_status_updated_at = append_history(order, OrderStatus.NOTFOUND, now, NOT_FOUND_NOTE, None)
            order.status = OrderStatus.NOTFOUND
            event = OrderStatusChanged(
                order_id=order.id,
                old_status=old_status.value,
                new_status=OrderStatus.NOTFOUND.value,
                tracking_number=order.tracking_number,
                source="manual",
            )
        order.tracking_last_checked_at = now
        return event

    def _publish(self, event: OrderStatusChanged) -> None:
        if self.events is not None:
            self.events.publish(event)


def build_reconciler(db, gateway: Optional[CarrierGateway] = None,
                     events: Optional[StatusEventBus] = None) -> Reconciler:
    """Reconciler over a request- or job-scoped session with the process-wide gateway and event bus."""
    return Reconciler(
        store=OrderStore(db),
        gateway=gateway or get_carrier_gateway(),
        events=events if events is not None else event_bus,
        batch_limit=settings.CARRIER_BATCH_LIMIT,
    )
