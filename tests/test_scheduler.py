"""
Worker scheduler tests: stable job ids, single-flight runs, delivery retries
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from parceltrack.errors import SchedulingConflict
from parceltrack.workers.scheduler import WorkerScheduler
from parceltrack.workers.tracking_worker import TRACKING_JOB_ID, register_tracking_job


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def _ok():
    return {"success": True}


class TestRegistration:

    def test_reregistering_replaces_the_job(self):
        scheduler = WorkerScheduler()
        scheduler.register("tracking:reconcile-batch", _ok, interval=3600)
        scheduler.register("tracking:reconcile-batch", _ok, interval=600)

        assert list(scheduler.workers) == ["tracking:reconcile-batch"]
        assert scheduler.workers["tracking:reconcile-batch"]["interval"] == 600

    def test_reregistering_keeps_last_run(self):
        scheduler = WorkerScheduler()
        scheduler.register("job", _ok, interval=60)
        asyncio.run(scheduler.run_worker("job"))
        last_run = scheduler.workers["job"]["last_run"]

        scheduler.register("job", _ok, interval=60)

        assert scheduler.workers["job"]["last_run"] == last_run
        assert scheduler.workers["job"]["last_result"] == {"success": True}

    @pytest.mark.parametrize("job_id,interval", [("", 60), ("job", 0), ("job", -5)])
    def test_invalid_registration(self, job_id, interval):
        with pytest.raises(SchedulingConflict):
            WorkerScheduler().register(job_id, _ok, interval=interval)

    def test_start_requires_running_loop(self):
        with pytest.raises(SchedulingConflict):
            WorkerScheduler().start()

    def test_tracking_job_registered_under_stable_id(self):
        scheduler = WorkerScheduler()
        register_tracking_job(scheduler)
        register_tracking_job(scheduler)

        assert list(scheduler.workers) == [TRACKING_JOB_ID]


class TestRuns:

    def test_single_flight(self):
        scheduler = WorkerScheduler()
        started = []

        async def slow_job():
            started.append(True)
            await asyncio.sleep(0.01)
            return {"success": True}

        scheduler.register("job", slow_job, interval=60)

        async def main():
            return await asyncio.gather(scheduler.run_worker("job"), scheduler.run_worker("job"))

        first, second = asyncio.run(main())

        assert first == {"success": True}
        assert second is None
        assert started == [True]
        assert scheduler.workers["job"]["in_flight"] is False

    def test_retries_with_exponential_backoff(self):
        sleep = RecordingSleep()
        scheduler = WorkerScheduler(max_attempts=3, backoff_base=2.0, sleep=sleep)
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("database went away")
            return {"success": True}

        scheduler.register("job", flaky, interval=60)
        result = asyncio.run(scheduler.run_worker("job"))

        assert result == {"success": True}
        assert sleep.delays == [2.0, 4.0]

    def test_gives_up_after_max_attempts(self):
        sleep = RecordingSleep()
        scheduler = WorkerScheduler(max_attempts=3, sleep=sleep)

        async def broken():
            raise RuntimeError("still broken")

        scheduler.register("job", broken, interval=60)
        result = asyncio.run(scheduler.run_worker("job"))

        assert result["success"] is False
        assert result["attempts"] == 3
        assert "still broken" in result["message"]
        assert len(sleep.delays) == 2
        assert scheduler.workers["job"]["last_result"] == result

    def test_unsuccessful_result_is_not_retried(self):
        sleep = RecordingSleep()
        scheduler = WorkerScheduler(sleep=sleep)
        calls = []

        async def carrier_down():
            calls.append(1)
            return {"success": False, "error": "Carrier returned HTTP 503"}

        scheduler.register("job", carrier_down, interval=60)
        asyncio.run(scheduler.run_worker("job"))

        assert calls == [1]
        assert sleep.delays == []


class TestDueJobs:

    def test_first_delay_and_interval(self):
        scheduler = WorkerScheduler()
        scheduler.register("job", _ok, interval=3600, first_delay=120)
        now = datetime.now(timezone.utc)

        assert scheduler.due_jobs(now) == []
        assert scheduler.due_jobs(now + timedelta(seconds=121)) == ["job"]

        scheduler.workers["job"]["last_run"] = now + timedelta(seconds=121)
        assert scheduler.due_jobs(now + timedelta(seconds=1800)) == []
        assert scheduler.due_jobs(now + timedelta(seconds=3722)) == ["job"]

    def test_disabled_job_never_due(self):
        scheduler = WorkerScheduler()
        scheduler.register("job", _ok, interval=60, enabled=False)

        assert scheduler.due_jobs(datetime.now(timezone.utc) + timedelta(days=1)) == []

    def test_status_report(self):
        scheduler = WorkerScheduler()
        scheduler.register("job", _ok, interval=60)

        status = scheduler.get_worker_status()["job"]

        assert status["interval_seconds"] == 60
        assert status["last_run"] is None
        assert status["status"] == "stopped"


class TestBackgroundTasks:

    def test_spawned_job_is_held_until_it_finishes(self):
        scheduler = WorkerScheduler()
        scheduler.register("job", _ok, interval=60)

        async def main():
            task = scheduler.spawn("job")
            held = task in scheduler._job_tasks
            result = await task
            await asyncio.sleep(0)
            return held, result

        held, result = asyncio.run(main())

        assert held is True
        assert result == {"success": True}
        assert scheduler._job_tasks == set()

    def test_failing_job_task_is_logged(self, caplog):
        scheduler = WorkerScheduler()

        async def main():
            task = scheduler.spawn("removed-between-ticks")
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)

        with caplog.at_level("ERROR"):
            asyncio.run(main())

        assert scheduler._job_tasks == set()
        assert "Background job task failed" in caplog.text

    def test_stop_cancels_running_jobs(self):
        scheduler = WorkerScheduler()

        async def never_finishes():
            await asyncio.sleep(3600)
            return {"success": True}

        scheduler.register("job", never_finishes, interval=60)

        async def main():
            task = scheduler.spawn("job")
            await asyncio.sleep(0)
            scheduler.stop_scheduler()
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)
            return task

        task = asyncio.run(main())

        assert task.cancelled()
        assert scheduler.workers["job"]["in_flight"] is False
        assert scheduler._job_tasks == set()
