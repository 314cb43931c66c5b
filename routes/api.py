"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from parceltrack.http.controllers import tracking, workers

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    app.include_router(tracking.router, prefix=f"{settings.API_PREFIX}/tracking", tags=["tracking"])
    app.include_router(workers.router, prefix=f"{settings.API_PREFIX}/workers", tags=["workers"])
