"""
Tracking routes: read the tracking view of an order and manually refresh it against the carrier.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from parceltrack.auth import CurrentUser, get_current_user, require_admin
from parceltrack.database import get_db
from parceltrack.errors import CarrierUnavailable, OrderNotFound
from parceltrack.http.requests.schemas import TrackingEnvelope, TrackingStatusResponse
from parceltrack.services.reconciler import build_reconciler
from parceltrack.workers.tracking_worker import refresh_order

logger = logging.getLogger(__name__)
router = APIRouter()


def _envelope(message: str, view) -> TrackingEnvelope:
    return TrackingEnvelope(message=message, tracking=TrackingStatusResponse.from_view(view))


@router.get("/orders/{order_id}", response_model=TrackingEnvelope)
async def get_my_tracking_status(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Tracking status for one of the caller's orders. Read-only; no carrier call."""
    try:
        view = build_reconciler(db).get_tracking(order_id, current_user.id)
    except OrderNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return _envelope("Tracking status retrieved successfully", view)


@router.post("/orders/{order_id}/refresh", response_model=TrackingEnvelope)
async def refresh_tracking_status(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Reconcile one of the caller's orders against the carrier now and return the updated view."""
    try:
        view = await refresh_order(db, order_id, current_user.id)
    except OrderNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except CarrierUnavailable as e:
        logger.warning("Manual refresh of order %s failed: %s", order_id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Carrier tracking is temporarily unavailable, please try again later",
        )
    return _envelope("Tracking status refreshed successfully", view)


@router.get("/admin/orders/{order_id}", response_model=TrackingEnvelope)
async def get_admin_tracking_status(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Tracking status for any order (ADMIN/MODERATOR)."""
    try:
        view = build_reconciler(db).get_tracking(order_id)
    except OrderNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return _envelope("Tracking status retrieved successfully", view)
