"""
In-process event bus for order status changes.

The reconciler publishes after the order row is committed; subscribers run as
background tasks so notification work never sits inside a reconciliation pass.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: str
    old_status: str
    new_status: str
    tracking_number: Optional[str] = None
    source: str = "scheduled"

    def to_dict(self) -> dict:
        return asdict(self)


Subscriber = Callable[[OrderStatusChanged], Awaitable[None]]


class StatusEventBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    def publish(self, event: OrderStatusChanged) -> None:
        """Schedule delivery to every subscriber. Must be called from a running event loop."""
        logger.info(
            "Order %s status changed from %s to %s",
            event.order_id, event.old_status, event.new_status,
        )
        for handler in self._subscribers:
            task = asyncio.get_running_loop().create_task(self._deliver(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, handler: Subscriber, event: OrderStatusChanged) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error("Status event handler failed for order %s: %s", event.order_id, e, exc_info=True)

    async def join(self) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Global bus instance
event_bus = StatusEventBus()
