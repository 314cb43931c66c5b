"""
Carrier lifecycle -> order status mapping.
Always recomputed from the full snapshot; never incremented from the previous status.
"""
from parceltrack.models import OrderStatus


def map_status(snapshot) -> OrderStatus:
    """
    Map carrier lifecycle timestamps to an OrderStatus, most advanced first:
    shipped -> TRANSIT, manifested -> DISPATCHED, printed -> PROCESSING, else PENDING.
    """
    if snapshot.shipped_on:
        return OrderStatus.TRANSIT
    if snapshot.manifested_on:
        return OrderStatus.DISPATCHED
    if snapshot.printed_on:
        return OrderStatus.PROCESSING
    return OrderStatus.PENDING
