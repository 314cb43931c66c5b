"""
Pydantic schemas for tracking responses (Http/Requests).
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class StatusHistoryEntry(BaseModel):
    status: str
    timestamp: str
    note: Optional[str] = None
    carrierSnapshot: Optional[Dict[str, Any]] = None


class TrackingStatusResponse(BaseModel):
    orderId: str
    trackingReference: Optional[str] = None
    status: str
    trackingLastCheckedAt: Optional[datetime] = None
    trackingStatusUpdatedAt: Optional[datetime] = None
    trackingEvents: List[StatusHistoryEntry] = []
    isActive: bool

    @classmethod
    def from_view(cls, view) -> "TrackingStatusResponse":
        return cls(
            orderId=view.order_id,
            trackingReference=view.tracking_reference,
            status=view.status,
            trackingLastCheckedAt=view.tracking_last_checked_at,
            trackingStatusUpdatedAt=view.tracking_status_updated_at,
            trackingEvents=view.tracking_events,
            isActive=view.is_active,
        )


class TrackingEnvelope(BaseModel):
    message: str
    tracking: TrackingStatusResponse
