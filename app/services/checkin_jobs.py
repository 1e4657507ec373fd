from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Date, exists, func, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import UpstreamUnavailable
from app.logging_utils import sanitize_exception
from app.models import (
    Checkin,
    CheckinPhase,
    CheckinPhaseEvent,
    CheckinStatus,
    JobType,
    Notification,
    NotificationEventType,
    Offender,
    OffenderStatus,
)
from app.services.case_directory import MAX_BATCH_SIZE, CaseDirectoryClient, ContactDetails, chunked
from app.services.checkin_creation import CheckinCreationService, insert_checkins, load_checkins, prepare_checkin
from app.services.job_runs import JobContext, JobDefinition, JobRunner, JobRunResult
from app.services.notifications import DispatchSummary, NotificationOrchestrator
from app.services.schedule import business_today, expiry_cutoff, reminder_due_date, start_of_business_day
from app.settings import Settings

logger = logging.getLogger("app.checkin_jobs")

ACTIVE_CHECKIN_STATUSES = (CheckinStatus.CREATED, CheckinStatus.SUBMITTED, CheckinStatus.REVIEWED)


@dataclass(slots=True)
class CreationMetrics:
    processed: int = 0
    created: int = 0
    skipped_missing_details: int = 0
    errors: int = 0
    notifications: int = 0
    chunks: int = 0


@dataclass(slots=True)
class NotifyMetrics:
    processed: int = 0
    notifications: int = 0
    failed: int = 0
    undeliverable: int = 0
    missing_details: int = 0
    chunks: int = 0


def find_offenders_due(session: Session, today: date) -> list[Offender]:
    """VERIFIED offenders whose schedule lands on ``today`` and who have no live check-in for it."""
    days_since_first = literal(today, Date) - Offender.first_checkin
    has_checkin = exists().where(
        Checkin.offender_id == Offender.id,
        Checkin.due_date == today,
        Checkin.status.in_(ACTIVE_CHECKIN_STATUSES),
    )
    statement = (
        select(Offender)
        .where(
            Offender.status == OffenderStatus.VERIFIED,
            Offender.first_checkin <= today,
            Offender.checkin_interval_days > 0,
            func.mod(days_since_first, Offender.checkin_interval_days) == 0,
            ~has_checkin,
        )
        .order_by(Offender.id)
    )
    return list(session.scalars(statement).all())


def expire_overdue_checkins(session: Session, cutoff: date, expired_at: datetime) -> list[int]:
    """Moves CREATED check-ins due on or before ``cutoff`` to EXPIRED; returns the ids changed."""
    result = session.execute(
        update(Checkin)
        .where(Checkin.status == CheckinStatus.CREATED, Checkin.due_date <= cutoff)
        .values(status=CheckinStatus.EXPIRED)
        .returning(Checkin.id)
        .execution_options(synchronize_session=False)
    )
    expired_ids = list(result.scalars().all())
    session.add_all(
        CheckinPhaseEvent(checkin_id=checkin_id, phase=CheckinPhase.EXPIRED, occurred_at=expired_at)
        for checkin_id in expired_ids
    )
    session.flush()
    return expired_ids


def find_reminder_candidates(session: Session, due_date: date, window_start: datetime) -> list[Checkin]:
    already_reminded = exists().where(
        Notification.offender_id == Checkin.offender_id,
        Notification.event_type == NotificationEventType.CHECKIN_REMINDER.value,
        Notification.created_at >= window_start,
    )
    statement = (
        select(Checkin)
        .where(
            Checkin.status == CheckinStatus.CREATED,
            Checkin.due_date == due_date,
            ~already_reminded,
        )
        .order_by(Checkin.id)
    )
    return list(session.scalars(statement).unique().all())


def _lookup_contact_details(case_directory: CaseDirectoryClient, crns: list[str], job_type: JobType) -> dict[str, ContactDetails]:
    try:
        details = case_directory.get_contact_details_for_many(crns)
    except UpstreamUnavailable as exc:
        logger.warning(
            "checkin_job_contact_lookup_failed",
            extra={"job_type": job_type.value, "count": len(crns), "error": sanitize_exception(exc)},
        )
        return {}
    return {item.crn: item for item in details}


class _CheckinJob:
    job_type: JobType
    lock_name: str
    depends_on: JobType | None = None

    def __init__(self, *, runner: JobRunner, settings: Settings):
        self.runner = runner
        self.settings = settings

    @property
    def definition(self) -> JobDefinition:
        return JobDefinition(
            job_type=self.job_type,
            lock_name=self.lock_name,
            min_hold=timedelta(seconds=self.settings.checkin_job_lock_min_seconds),
            max_hold=timedelta(seconds=self.settings.checkin_job_lock_max_seconds),
            depends_on=self.depends_on,
        )

    def run(self, today: date | None = None) -> JobRunResult:
        run_date = today or business_today(self.settings.checkin_timezone)
        return self.runner.run(self.definition, self.process, run_date=run_date)

    def process(self, context: JobContext) -> dict[str, Any]:
        raise NotImplementedError


class CheckinCreationWorker(_CheckinJob):
    job_type = JobType.CHECKIN_CREATION
    lock_name = "checkin-creation"

    def __init__(
        self,
        *,
        runner: JobRunner,
        settings: Settings,
        session_factory: Callable[[], Session],
        case_directory: CaseDirectoryClient,
        creation_service: CheckinCreationService,
    ):
        super().__init__(runner=runner, settings=settings)
        self.session_factory = session_factory
        self.case_directory = case_directory
        self.creation_service = creation_service

    def process(self, context: JobContext) -> dict[str, Any]:
        today = context.run_date
        metrics = CreationMetrics()
        with self.session_factory() as session:
            offenders = find_offenders_due(session, today)
        metrics.processed = len(offenders)

        for chunk in chunked(offenders, MAX_BATCH_SIZE):
            metrics.chunks += 1
            details_by_crn = _lookup_contact_details(self.case_directory, [o.crn for o in chunk], self.job_type)
            rows = []
            for offender in chunk:
                if offender.crn not in details_by_crn:
                    metrics.skipped_missing_details += 1
                    logger.warning(
                        "checkin_creation_skipped_missing_details",
                        extra={"offender_uuid": str(offender.uuid), "crn": offender.crn},
                    )
                    continue
                rows.append(prepare_checkin(offender, today))

            try:
                with self.session_factory() as session, session.begin():
                    created = load_checkins(session, insert_checkins(session, rows))
            except SQLAlchemyError:
                metrics.errors += len(rows)
                logger.exception("checkin_creation_batch_failed", extra={"count": len(rows)})
                continue
            metrics.created += len(created)

            for checkin in created:
                summary = self.creation_service.notify_created(
                    checkin,
                    contact_details=details_by_crn.get(checkin.offender.crn),
                    job_log_id=context.job_log_id,
                )
                metrics.notifications += summary.sent
                metrics.errors += summary.failed

        return asdict(metrics)


class CheckinExpiryWorker(_CheckinJob):
    job_type = JobType.CHECKIN_EXPIRY
    lock_name = "checkin-expiry"
    depends_on = JobType.CHECKIN_CREATION

    def __init__(
        self,
        *,
        runner: JobRunner,
        settings: Settings,
        session_factory: Callable[[], Session],
        case_directory: CaseDirectoryClient,
        orchestrator: NotificationOrchestrator,
    ):
        super().__init__(runner=runner, settings=settings)
        self.session_factory = session_factory
        self.case_directory = case_directory
        self.orchestrator = orchestrator

    def process(self, context: JobContext) -> dict[str, Any]:
        cutoff = expiry_cutoff(context.run_date, self.settings.checkin_grace_period_days)
        with self.session_factory() as session, session.begin():
            expired = load_checkins(session, expire_overdue_checkins(session, cutoff, datetime.now(timezone.utc)))
        logger.info("checkins_expired", extra={"count": len(expired), "cutoff": cutoff.isoformat()})

        metrics = NotifyMetrics(processed=len(expired))
        for chunk in chunked(expired, MAX_BATCH_SIZE):
            metrics.chunks += 1
            details_by_crn = _lookup_contact_details(
                self.case_directory, sorted({c.offender.crn for c in chunk}), self.job_type
            )
            items = [(checkin, details_by_crn.get(checkin.offender.crn)) for checkin in chunk]
            metrics.missing_details += sum(1 for _, details in items if details is None)
            _record(metrics, self.orchestrator.notify_checkins_expired(items, job_log_id=context.job_log_id))
        result = asdict(metrics)
        result["expired"] = len(expired)
        return result


class CheckinReminderWorker(_CheckinJob):
    job_type = JobType.CHECKIN_REMINDER
    lock_name = "checkin-reminder"
    depends_on = JobType.CHECKIN_CREATION

    def __init__(
        self,
        *,
        runner: JobRunner,
        settings: Settings,
        session_factory: Callable[[], Session],
        case_directory: CaseDirectoryClient,
        orchestrator: NotificationOrchestrator,
    ):
        super().__init__(runner=runner, settings=settings)
        self.session_factory = session_factory
        self.case_directory = case_directory
        self.orchestrator = orchestrator

    def process(self, context: JobContext) -> dict[str, Any]:
        offset = self.settings.checkin_reminder_day_offset
        if offset >= self.settings.checkin_grace_period_days:
            logger.warning(
                "checkin_reminder_outside_window",
                extra={"offset": offset, "grace_period_days": self.settings.checkin_grace_period_days},
            )
            return asdict(NotifyMetrics())

        due_date = reminder_due_date(context.run_date, offset)
        window_start = start_of_business_day(due_date, self.settings.checkin_timezone)
        with self.session_factory() as session:
            candidates = find_reminder_candidates(session, due_date, window_start)

        metrics = NotifyMetrics(processed=len(candidates))
        for chunk in chunked(candidates, MAX_BATCH_SIZE):
            metrics.chunks += 1
            details_by_crn = _lookup_contact_details(
                self.case_directory, sorted({c.offender.crn for c in chunk}), self.job_type
            )
            items = [(checkin, details_by_crn.get(checkin.offender.crn)) for checkin in chunk]
            metrics.missing_details += sum(1 for _, details in items if details is None)
            _record(metrics, self.orchestrator.notify_checkin_reminders(items, job_log_id=context.job_log_id))
        result = asdict(metrics)
        result["due_date"] = due_date.isoformat()
        return result


def _record(metrics: NotifyMetrics, summary: DispatchSummary) -> None:
    metrics.notifications += summary.sent
    metrics.failed += summary.failed
    metrics.undeliverable += summary.undeliverable

