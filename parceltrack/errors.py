"""
Tracking engine error taxonomy.

OrderNotFound and CarrierUnavailable are business/integration errors surfaced to
request handlers; SchedulingConflict is fatal at process startup.
"""


class TrackingError(Exception):
    """Base class for all tracking engine errors."""


class OrderNotFound(TrackingError):
    """Order is missing, not owned by the caller, or has no carrier shipment yet."""

    def __init__(self, order_id: str, message: str = "Order not found"):
        super().__init__(message)
        self.order_id = order_id
        self.message = message


class CarrierUnavailable(TrackingError):
    """Transient failure talking to the carrier: timeout, non-2xx, malformed body."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SchedulingConflict(TrackingError):
    """The recurring reconciliation job could not be registered or started."""
