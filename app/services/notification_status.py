from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.logging_utils import sanitize_exception
from app.models import JobType, Notification
from app.services.job_runs import JobContext, JobDefinition, JobRunner, JobRunResult
from app.services.notifications import STATUS_FAILED
from app.services.notify_gateway import TERMINAL_NOTIFICATION_STATUSES, NotifyGateway
from app.services.schedule import business_today
from app.settings import Settings

logger = logging.getLogger("app.notification_status")

MAX_PAGES_PER_REFERENCE = 100


def find_reconciliation_candidates(session: Session, *, job_scoped: bool, since: datetime) -> list[tuple[str, uuid.UUID, str]]:
    """``(reference, provider id, local status)`` of sent notifications still awaiting a final status."""
    statement = select(Notification.reference, Notification.notification_id, Notification.status).where(
        Notification.status.not_in(sorted(TERMINAL_NOTIFICATION_STATUSES)),
        Notification.status != STATUS_FAILED,
        Notification.sent_at.is_not(None),
        Notification.created_at >= since,
    )
    if job_scoped:
        statement = statement.where(Notification.job_log_id.is_not(None))
    else:
        statement = statement.where(Notification.job_log_id.is_(None))
    return [(row[0], row[1], row[2]) for row in session.execute(statement.order_by(Notification.id)).all()]


def apply_status_updates(session: Session, updates: dict[str, list[uuid.UUID]]) -> int:
    now_utc = datetime.now(timezone.utc)
    changed = 0
    for status, notification_ids in updates.items():
        if not notification_ids:
            continue
        result = session.execute(
            update(Notification)
            .where(
                Notification.notification_id.in_(notification_ids),
                Notification.status.not_in(sorted(TERMINAL_NOTIFICATION_STATUSES)),
            )
            .values(status=status, updated_at=now_utc)
            .execution_options(synchronize_session=False)
        )
        changed += result.rowcount or 0
    return changed


class NotificationStatusReconciler:
    """Pulls delivery statuses from the provider for notifications sent in the lookback window.

    One engine, two instances: worker-sent notifications (linked to a ``JobLog``) and ad-hoc ones.
    """

    def __init__(
        self,
        *,
        job_type: JobType,
        runner: JobRunner,
        session_factory: Callable[[], Session],
        gateway: NotifyGateway,
        settings: Settings,
    ):
        if job_type not in {JobType.JOB_NOTIFICATION_STATUS, JobType.GENERIC_NOTIFICATION_STATUS}:
            raise ValueError(f"Unsupported reconciliation job type: {job_type.value}")
        self.job_type = job_type
        self.runner = runner
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings

    @property
    def job_scoped(self) -> bool:
        return self.job_type == JobType.JOB_NOTIFICATION_STATUS

    @property
    def lookback(self) -> timedelta:
        if self.job_scoped:
            return timedelta(days=self.settings.job_notification_status_lookback_days)
        return timedelta(days=self.settings.generic_notification_status_lookback_days)

    @property
    def definition(self) -> JobDefinition:
        return JobDefinition(
            job_type=self.job_type,
            lock_name="job-notification-status" if self.job_scoped else "generic-notification-status",
            min_hold=timedelta(seconds=self.settings.notification_status_lock_min_seconds),
            max_hold=timedelta(seconds=self.settings.notification_status_lock_max_seconds),
        )

    def run(self, today: date | None = None) -> JobRunResult:
        run_date = today or business_today(self.settings.checkin_timezone)
        return self.runner.run(self.definition, self.process, run_date=run_date)

    def fetch_statuses(self, reference: str, wanted: set[uuid.UUID]) -> tuple[dict[uuid.UUID, str], int]:
        found: dict[uuid.UUID, str] = {}
        cursor: str | None = None
        pages = 0
        while pages < MAX_PAGES_PER_REFERENCE:
            page = self.gateway.notification_status(reference, older_than=cursor)
            pages += 1
            for item in page.items:
                if item.notification_id in wanted:
                    found[item.notification_id] = item.status
            if len(found) == len(wanted):
                break
            if not page.has_next_page or not page.next_cursor or page.next_cursor == cursor:
                break
            cursor = page.next_cursor
        return found, pages

    def process(self, context: JobContext) -> dict[str, Any]:
        since = datetime.now(timezone.utc) - self.lookback
        with self.session_factory() as session:
            candidates = find_reconciliation_candidates(session, job_scoped=self.job_scoped, since=since)

        by_reference: dict[str, dict[uuid.UUID, str]] = defaultdict(dict)
        for reference, notification_id, status in candidates:
            by_reference[reference][notification_id] = status

        updates: dict[str, list[uuid.UUID]] = defaultdict(list)
        pages = 0
        failed_references = 0
        for reference, local_statuses in by_reference.items():
            try:
                remote_statuses, reference_pages = self.fetch_statuses(reference, set(local_statuses))
            except Exception as exc:
                failed_references += 1
                logger.warning(
                    "notification_status_lookup_failed",
                    extra={"job_type": self.job_type.value, "error": sanitize_exception(exc, uuid=reference)},
                )
                continue
            pages += reference_pages
            for notification_id, status in remote_statuses.items():
                if status != local_statuses[notification_id]:
                    updates[status].append(notification_id)

        updated = 0
        if updates:
            with self.session_factory() as session, session.begin():
                updated = apply_status_updates(session, updates)

        logger.info(
            "notification_status_reconciled",
            extra={"job_type": self.job_type.value, "candidates": len(candidates), "updated": updated},
        )
        return {
            "candidates": len(candidates),
            "references": len(by_reference),
            "pages": pages,
            "updated": updated,
            "failed_references": failed_references,
            "statuses": {status: len(ids) for status, ids in updates.items()},
        }
