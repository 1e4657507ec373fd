from __future__ import annotations

import asyncio
import threading
import unittest
from datetime import datetime, timezone

from app.scheduler import JobScheduler, ScheduledJob


class _BlockingJob:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.runs = 0

    def __call__(self) -> str:
        self.runs += 1
        self.started.set()
        self.release.wait(timeout=5)
        return "done"


class JobSchedulerTests(unittest.TestCase):
    def test_invalid_cron_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            JobScheduler([ScheduledJob("bad", "not a cron", lambda: None)], timezone_name="UTC")

    def test_next_run_at_uses_configured_zone(self) -> None:
        scheduler = JobScheduler([ScheduledJob("daily", "0 6 * * *", lambda: None)], timezone_name="Europe/London")
        now = datetime(2025, 6, 8, 4, 0, tzinfo=timezone.utc)
        next_at = scheduler.next_run_at("daily", now)
        self.assertEqual(next_at.astimezone(timezone.utc), datetime(2025, 6, 8, 5, 0, tzinfo=timezone.utc))

    def test_run_now_does_not_overlap_the_same_job(self) -> None:
        job = _BlockingJob()
        scheduler = JobScheduler([ScheduledJob("creation", "0 6 * * *", job)], timezone_name="UTC", pool_size=2)
        try:
            first = scheduler.run_now("creation")
            self.assertIsNotNone(first)
            self.assertTrue(job.started.wait(timeout=5))
            self.assertIsNone(scheduler.run_now("creation"))
            self.assertEqual(scheduler.in_flight(), ["creation"])

            job.release.set()
            assert first is not None
            self.assertEqual(first.result(timeout=5), "done")
            for _ in range(50):
                if not scheduler.in_flight():
                    break
                threading.Event().wait(0.01)
            self.assertEqual(scheduler.in_flight(), [])
            second = scheduler.run_now("creation")
            assert second is not None
            second.result(timeout=5)
            self.assertEqual(job.runs, 2)
        finally:
            job.release.set()
            asyncio.run(scheduler.stop())

    def test_unknown_job_raises_key_error(self) -> None:
        scheduler = JobScheduler([], timezone_name="UTC")
        with self.assertRaises(KeyError):
            scheduler.run_now("missing")

    def test_failing_job_is_contained(self) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        scheduler = JobScheduler([ScheduledJob("boom", "0 6 * * *", boom)], timezone_name="UTC")
        future = scheduler.run_now("boom")
        assert future is not None
        self.assertIsNone(future.result(timeout=5))
        asyncio.run(scheduler.stop())

    def test_state_lists_jobs(self) -> None:
        scheduler = JobScheduler(
            [ScheduledJob("b", "*/15 * * * *", lambda: None), ScheduledJob("a", "0 6 * * *", lambda: None)],
            timezone_name="UTC",
        )
        state = scheduler.state()
        self.assertFalse(state["timers_running"])
        self.assertEqual(list(state["jobs"]), ["a", "b"])
        self.assertEqual(state["jobs"]["b"]["cron"], "*/15 * * * *")


class JobSchedulerLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def test_stop_drains_in_flight_runs_and_rejects_new_ones(self) -> None:
        job = _BlockingJob()
        scheduler = JobScheduler([ScheduledJob("expiry", "0 7 * * *", job)], timezone_name="UTC", drain_timeout_seconds=5)
        scheduler.start()
        self.assertTrue(scheduler.timers_running)

        future = scheduler.run_now("expiry")
        assert future is not None
        await asyncio.to_thread(job.started.wait, 5)

        stop_task = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        self.assertIsNone(scheduler.run_now("expiry"))
        self.assertFalse(stop_task.done())

        job.release.set()
        await asyncio.wait_for(stop_task, timeout=5)
        self.assertTrue(future.done())
        self.assertEqual(future.result(), "done")
        self.assertFalse(scheduler.timers_running)
        self.assertTrue(scheduler.state()["stopping"])

    async def test_start_is_idempotent(self) -> None:
        scheduler = JobScheduler([ScheduledJob("expiry", "0 7 * * *", lambda: None)], timezone_name="UTC")
        scheduler.start()
        timers = dict(scheduler._timers)
        scheduler.start()
        self.assertEqual(scheduler._timers, timers)
        await scheduler.stop()


if __name__ == "__main__":
    unittest.main()
