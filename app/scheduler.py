from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from app.logging_utils import sanitize_exception

logger = logging.getLogger("app.scheduler")


@dataclass(frozen=True, slots=True)
class ScheduledJob:
    name: str
    cron: str
    run: Callable[[], Any]


class JobScheduler:
    """One asyncio timer per job; runs execute on a bounded thread pool and never overlap themselves."""

    def __init__(
        self,
        jobs: list[ScheduledJob],
        *,
        timezone_name: str,
        pool_size: int = 3,
        drain_timeout_seconds: float = 120.0,
    ):
        for job in jobs:
            if not croniter.is_valid(job.cron):
                raise ValueError(f"Invalid cron expression for {job.name}: {job.cron}")
        self.jobs = {job.name: job for job in jobs}
        self.timezone = ZoneInfo(timezone_name)
        self.drain_timeout_seconds = drain_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="checkin-jobs")
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future[Any]] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._stopping = False

    @property
    def job_names(self) -> list[str]:
        return sorted(self.jobs)

    @property
    def timers_running(self) -> bool:
        return any(not task.done() for task in self._timers.values())

    def next_run_at(self, name: str, now: datetime | None = None) -> datetime:
        base = now.astimezone(self.timezone) if now is not None else datetime.now(self.timezone)
        return croniter(self.jobs[name].cron, base).get_next(datetime)

    def start(self) -> None:
        if self._timers:
            return
        for job in self.jobs.values():
            self._timers[job.name] = asyncio.create_task(self._timer(job), name=f"scheduler:{job.name}")
        logger.info("scheduler_started", extra={"jobs": self.job_names})

    async def _timer(self, job: ScheduledJob) -> None:
        while not self._stopping:
            now = datetime.now(self.timezone)
            next_at = self.next_run_at(job.name, now)
            await asyncio.sleep(max(0.0, (next_at - now).total_seconds()))
            if self._stopping:
                return
            self.run_now(job.name)

    def run_now(self, name: str) -> Future[Any] | None:
        """Submits a run unless one is already in flight here. Raises ``KeyError`` for unknown jobs."""
        job = self.jobs[name]
        with self._lock:
            if self._stopping:
                logger.info("scheduled_job_rejected_stopping", extra={"job": name})
                return None
            if name in self._in_flight:
                logger.info("scheduled_job_already_running", extra={"job": name})
                return None
            future = self._executor.submit(self._execute, job)
            self._in_flight[name] = future
        future.add_done_callback(lambda done: self._finished(name, done))
        return future

    def _finished(self, name: str, future: Future[Any]) -> None:
        with self._lock:
            if self._in_flight.get(name) is future:
                del self._in_flight[name]

    def _execute(self, job: ScheduledJob) -> Any:
        logger.info("scheduled_job_started", extra={"job": job.name})
        try:
            result = job.run()
        except Exception as exc:
            logger.exception("scheduled_job_failed", extra={"job": job.name, "error": sanitize_exception(exc)})
            return None
        logger.info("scheduled_job_finished", extra={"job": job.name})
        return result

    def in_flight(self) -> list[str]:
        with self._lock:
            return sorted(self._in_flight)

    async def stop(self) -> None:
        with self._lock:
            self._stopping = True
            pending = list(self._in_flight.values())
        for task in self._timers.values():
            task.cancel()
        if self._timers:
            await asyncio.gather(*self._timers.values(), return_exceptions=True)
        self._timers.clear()

        if pending:
            logger.info("scheduler_draining", extra={"in_flight": len(pending)})
            _, not_done = await asyncio.to_thread(wait, pending, self.drain_timeout_seconds)
            if not_done:
                logger.warning("scheduler_drain_timeout", extra={"still_running": len(not_done)})
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("scheduler_stopped")

    def state(self) -> dict[str, Any]:
        in_flight = set(self.in_flight())
        return {
            "timers_running": self.timers_running,
            "stopping": self._stopping,
            "jobs": {
                name: {"cron": job.cron, "in_flight": name in in_flight}
                for name, job in sorted(self.jobs.items())
            },
        }
