"""
Tracking Reconciliation Worker

Registers the recurring carrier reconciliation job and wires status-change
notifications. The job body is one Reconciler.run_batch() pass.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from parceltrack.config import settings
from parceltrack.database import SessionLocal
from parceltrack.errors import SchedulingConflict
from parceltrack.services.events import StatusEventBus, event_bus
from parceltrack.services.notifier import EmailNotifier, Notifier
from parceltrack.services.reconciler import TrackingView, build_reconciler
from parceltrack.workers.scheduler import WorkerScheduler, scheduler

logger = logging.getLogger(__name__)

TRACKING_JOB_ID = "tracking:reconcile-batch"


async def run_tracking_reconciliation() -> Dict[str, Any]:
    """One scheduled batch pass with its own database session."""
    db = SessionLocal()
    try:
        start_time = datetime.now(timezone.utc)
        result = await build_reconciler(db).run_batch()
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info("[TRACKING_WORKER] Batch completed in %.2fs", duration)
        summary = result.to_dict()
        summary["timestamp"] = datetime.now(timezone.utc).isoformat()
        return summary
    finally:
        db.close()


async def refresh_order(db, order_id: str, requesting_user_id: Optional[str] = None) -> TrackingView:
    """Manual refresh on the caller's task; never queued behind the scheduled job."""
    return await build_reconciler(db).run_single(order_id, requesting_user_id)


def wire_notifications(bus: StatusEventBus = event_bus, notifier: Optional[Notifier] = None) -> Notifier:
    """Subscribe the notifier to status-changed events. Call once at startup."""
    notifier = notifier or EmailNotifier(SessionLocal)
    bus.subscribe(notifier.notify_status_changed)
    return notifier


def register_tracking_job(worker_scheduler: WorkerScheduler = scheduler) -> None:
    """Register the reconciliation job under its stable id (idempotent across restarts)."""
    worker_scheduler.register(
        TRACKING_JOB_ID,
        run_tracking_reconciliation,
        interval=settings.TRACKING_INTERVAL_SEC,
        first_delay=settings.TRACKING_FIRST_DELAY_SEC,
        enabled=settings.TRACKING_SCHEDULER_ENABLED,
    )
    logger.info(
        "[TRACKING_WORKER] Registered %s (interval=%ss, first run after %ss)",
        TRACKING_JOB_ID, settings.TRACKING_INTERVAL_SEC, settings.TRACKING_FIRST_DELAY_SEC,
    )


def start_background_workers(worker_scheduler: WorkerScheduler = scheduler) -> None:
    """
    Register the tracking job and start the scheduler. Fatal on failure:
    the engine cannot run without its schedule.
    """
    try:
        register_tracking_job(worker_scheduler)
        worker_scheduler.start()
    except SchedulingConflict:
        logger.critical("❌ Failed to start tracking scheduler")
        raise
    logger.info("✅ Background workers started successfully")


def stop_background_workers(worker_scheduler: WorkerScheduler = scheduler) -> None:
    worker_scheduler.stop_scheduler()
