"""
Worker Scheduler

Runs registered background jobs at fixed intervals inside the application's event loop.
Jobs are keyed by a stable id: registering an id again replaces the existing
schedule instead of adding a second one, and a job never overlaps itself.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from parceltrack.config import settings
from parceltrack.errors import SchedulingConflict
from parceltrack.services.http_client import backoff_delay

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Dict[str, Any]]]

MAX_TICK_SECONDS = 60
MAX_BACKOFF_SECONDS = 60.0


class WorkerScheduler:
    """Scheduler for running background workers at specified intervals."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.workers: Dict[str, Dict[str, Any]] = {}
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.running = False
        self._sleep = sleep
        self._loop_task: Optional[asyncio.Task] = None
        self._job_tasks: Set[asyncio.Task] = set()

    def register(self, job_id: str, func: JobFunc, interval: int, first_delay: int = 0,
                 enabled: bool = True) -> None:
        """
        Register (or replace) a recurring job.

        Raises:
            SchedulingConflict: invalid interval or job id
        """
        if not job_id:
            raise SchedulingConflict("Job id is required")
        if not interval or interval <= 0:
            raise SchedulingConflict(f"Job {job_id}: interval must be positive, got {interval}")

        existing = self.workers.get(job_id)
        if existing:
            logger.info("Job %s already registered; replacing its schedule", job_id)
        created = datetime.now(timezone.utc)
        self.workers[job_id] = {
            "func": func,
            "interval": interval,
            "enabled": enabled,
            "last_run": existing["last_run"] if existing else None,
            "last_result": existing["last_result"] if existing else None,
            "not_before": created + timedelta(seconds=first_delay) if not existing else existing["not_before"],
            "in_flight": existing["in_flight"] if existing else False,
        }

    async def run_worker(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Run a job once with bounded delivery retries. Returns None when a run of the
        same job is already in flight.
        """
        worker_config = self.workers.get(job_id)
        if worker_config is None:
            raise KeyError(job_id)
        if worker_config["in_flight"]:
            logger.info("Worker %s is still running; skipping this tick", job_id)
            return None

        worker_config["in_flight"] = True
        try:
            result = await self._run_with_retries(job_id, worker_config)
        finally:
            worker_config["in_flight"] = False
            worker_config["last_run"] = datetime.now(timezone.utc)

        worker_config["last_result"] = result
        if result.get("success", False):
            logger.info("Worker %s completed: %s", job_id, result)
        else:
            logger.error("Worker %s failed: %s", job_id, result.get("error") or result.get("message", "Unknown error"))
        return result

    async def _run_with_retries(self, job_id: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.info("Starting worker: %s (attempt %s)", job_id, attempt)
                return await worker_config["func"]()
            except Exception as e:
                if attempt == self.max_attempts:
                    logger.exception("Worker %s crashed after %s attempts", job_id, attempt)
                    return {
                        "success": False,
                        "message": f"Worker crashed: {e}",
                        "attempts": attempt,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    }
                delay = backoff_delay(attempt, base=self.backoff_base, cap=MAX_BACKOFF_SECONDS)
                logger.warning("Worker %s attempt %s failed: %s; retrying in %.1fs", job_id, attempt, e, delay)
                await self._sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover

    def due_jobs(self, now: datetime) -> list:
        due = []
        for job_id, worker_config in self.workers.items():
            if not worker_config["enabled"] or worker_config["in_flight"]:
                continue
            if now < worker_config["not_before"]:
                continue
            last_run = worker_config["last_run"]
            if last_run is None or (now - last_run).total_seconds() >= worker_config["interval"]:
                due.append(job_id)
        return due

    def _tick_seconds(self) -> float:
        intervals = [w["interval"] for w in self.workers.values() if w["enabled"]]
        return min([MAX_TICK_SECONDS, *intervals])

    def spawn(self, job_id: str) -> asyncio.Task:
        """Run a job in the background; the task is held until it finishes."""
        task = asyncio.get_running_loop().create_task(self.run_worker(job_id))
        self._job_tasks.add(task)
        task.add_done_callback(self._job_done)
        return task

    def _job_done(self, task: asyncio.Task) -> None:
        self._job_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job task failed: %s", exc, exc_info=exc)

    async def start_scheduler(self):
        """Scheduler loop; checks due jobs every tick."""
        logger.info("🚀 Worker scheduler started")
        while self.running:
            for job_id in self.due_jobs(datetime.now(timezone.utc)):
                self.spawn(job_id)
            await asyncio.sleep(self._tick_seconds())

    def start(self) -> None:
        """
        Start the scheduler loop on the running event loop.

        Raises:
            SchedulingConflict: no running event loop to attach to
        """
        if self.running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise SchedulingConflict("Worker scheduler requires a running event loop") from e
        self.running = True
        self._loop_task = loop.create_task(self.start_scheduler())

    def stop_scheduler(self):
        """Stop the background worker scheduler."""
        self.running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        for task in list(self._job_tasks):
            task.cancel()
        logger.info("⏹️ Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all workers."""
        status = {}

        for job_id, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = worker_config["not_before"]
            if last_run:
                next_run = max(next_run, last_run + timedelta(seconds=worker_config["interval"]))

            status[job_id] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat(),
                "interval_seconds": worker_config["interval"],
                "in_flight": worker_config["in_flight"],
                "last_result": worker_config["last_result"],
                "status": "running" if self.running else "stopped",
            }

        return status


# Global scheduler instance
scheduler = WorkerScheduler(
    max_attempts=settings.JOB_MAX_ATTEMPTS,
    backoff_base=settings.JOB_BACKOFF_BASE_SEC,
)


def get_workers_status() -> Dict[str, Any]:
    """Get status of all background workers."""
    return scheduler.get_worker_status()
