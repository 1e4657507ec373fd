from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.logging_utils import sanitize_exception
from app.models import JobLog, JobRunStatus, JobType
from app.services.scheduler_lock import SchedulerLockManager
from app.settings import Settings

logger = logging.getLogger("app.job_runs")

UPSTREAM_NOT_COMPLETED = "upstream_job_not_completed"
LOCK_NOT_ACQUIRED = "lock_not_acquired"


@dataclass(frozen=True, slots=True)
class JobDefinition:
    job_type: JobType
    lock_name: str
    min_hold: timedelta
    max_hold: timedelta
    depends_on: JobType | None = None


@dataclass(frozen=True, slots=True)
class JobContext:
    job_log_id: int
    run_date: date


@dataclass(slots=True)
class JobRunResult:
    job_type: JobType
    status: JobRunStatus
    job_log_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


def upstream_completed(session: Session, job_type: JobType, run_date: date) -> bool:
    job_log_id = session.scalar(
        select(JobLog.id)
        .where(
            JobLog.job_type == job_type,
            JobLog.run_date == run_date,
            JobLog.status == JobRunStatus.COMPLETED,
        )
        .limit(1)
    )
    return job_log_id is not None


def start_job_log(
    session: Session,
    job_type: JobType,
    run_date: date,
    *,
    status: JobRunStatus = JobRunStatus.RUNNING,
    details: dict[str, Any] | None = None,
) -> JobLog:
    now_utc = datetime.now(timezone.utc)
    job_log = JobLog(
        job_type=job_type,
        run_date=run_date,
        status=status,
        details=details or {},
        created_at=now_utc,
        ended_at=None if status == JobRunStatus.RUNNING else now_utc,
    )
    session.add(job_log)
    session.flush()
    return job_log


def finish_job_log(session: Session, job_log_id: int, status: JobRunStatus, details: dict[str, Any]) -> None:
    job_log = session.get(JobLog, job_log_id)
    if job_log is None:
        return
    job_log.status = status
    job_log.details = details
    job_log.ended_at = datetime.now(timezone.utc)


def recent_job_logs(session: Session, *, job_type: JobType | None = None, limit: int = 50) -> list[JobLog]:
    statement = select(JobLog).order_by(JobLog.created_at.desc(), JobLog.id.desc()).limit(limit)
    if job_type is not None:
        statement = statement.where(JobLog.job_type == job_type)
    return list(session.scalars(statement).all())


class JobRunner:
    """Runs a worker body under the cluster lock and records it as a ``JobLog`` row."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        lock_manager: SchedulerLockManager,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.settings = settings

    def run(
        self,
        definition: JobDefinition,
        body: Callable[[JobContext], dict[str, Any]],
        *,
        run_date: date,
    ) -> JobRunResult:
        job_type = definition.job_type
        handle = self.lock_manager.try_acquire(
            definition.lock_name,
            min_hold=definition.min_hold,
            max_hold=definition.max_hold,
        )
        if handle is None:
            logger.info("job_run_skipped", extra={"job_type": job_type.value, "reason": LOCK_NOT_ACQUIRED})
            return JobRunResult(job_type=job_type, status=JobRunStatus.SKIPPED, details={"reason": LOCK_NOT_ACQUIRED})

        try:
            with self.session_factory() as session, session.begin():
                if (
                    definition.depends_on is not None
                    and self.settings.job_dependency_enforced
                    and not upstream_completed(session, definition.depends_on, run_date)
                ):
                    details = {"reason": UPSTREAM_NOT_COMPLETED, "upstream": definition.depends_on.value}
                    job_log = start_job_log(session, job_type, run_date, status=JobRunStatus.SKIPPED, details=details)
                    logger.warning(
                        "job_run_skipped",
                        extra={"job_type": job_type.value, "job_log_id": job_log.id, "details": details},
                    )
                    return JobRunResult(job_type=job_type, status=JobRunStatus.SKIPPED, job_log_id=job_log.id, details=details)
                job_log_id = start_job_log(session, job_type, run_date).id

            logger.info(
                "job_run_started",
                extra={"job_type": job_type.value, "job_log_id": job_log_id, "run_date": run_date.isoformat()},
            )
            started = datetime.now(timezone.utc)
            try:
                details = body(JobContext(job_log_id=job_log_id, run_date=run_date))
                status = JobRunStatus.COMPLETED
            except Exception as exc:
                logger.exception(
                    "job_run_failed",
                    extra={"job_type": job_type.value, "job_log_id": job_log_id},
                )
                details = {"error": sanitize_exception(exc)}
                status = JobRunStatus.FAILED
            details["duration_ms"] = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)

            with self.session_factory() as session, session.begin():
                finish_job_log(session, job_log_id, status, details)
            logger.info(
                "job_run_finished",
                extra={"job_type": job_type.value, "job_log_id": job_log_id, "status": status.value, "details": details},
            )
            return JobRunResult(job_type=job_type, status=status, job_log_id=job_log_id, details=details)
        finally:
            self.lock_manager.release(handle)
