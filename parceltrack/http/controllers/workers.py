"""
Worker status routes
"""
import logging
from fastapi import APIRouter, Depends

from parceltrack.auth import CurrentUser, require_admin
from parceltrack.workers.scheduler import get_workers_status

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/status")
async def workers_status(current_user: CurrentUser = Depends(require_admin)):
    """Schedule, last run and last result of every registered background job."""
    return {"workers": get_workers_status()}
