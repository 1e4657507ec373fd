from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import InvalidState, NotFound
from app.logging_utils import sanitize_exception
from app.models import Checkin, CheckinStatus, Offender, OffenderStatus
from app.services.case_directory import ContactDetails
from app.services.notifications import DispatchSummary, NotificationOrchestrator

logger = logging.getLogger("app.checkin_creation")

SYSTEM_ACTOR = "SYSTEM"


def prepare_checkin(offender: Offender, due_date: date, created_by: str = SYSTEM_ACTOR) -> dict[str, Any]:
    return {
        "uuid": uuid.uuid4(),
        "offender_id": offender.id,
        "due_date": due_date,
        "status": CheckinStatus.CREATED,
        "created_at": datetime.now(timezone.utc),
        "created_by": created_by,
    }


def insert_checkins(session: Session, rows: list[dict[str, Any]]) -> list[int]:
    """Inserts check-in rows, silently skipping any (offender, due date) pair that already exists.

    Returns the ids of the rows actually created.
    """
    if not rows:
        return []
    statement = (
        insert(Checkin)
        .values(rows)
        .on_conflict_do_nothing(constraint="uq_checkins_offender_due_date")
        .returning(Checkin.id)
    )
    return list(session.scalars(statement).all())


def load_checkins(session: Session, checkin_ids: list[int]) -> list[Checkin]:
    if not checkin_ids:
        return []
    return list(session.scalars(select(Checkin).where(Checkin.id.in_(checkin_ids)).order_by(Checkin.id)).all())


def find_checkin_for_due_date(session: Session, offender_id: int, due_date: date) -> Checkin | None:
    return session.scalar(
        select(Checkin).where(Checkin.offender_id == offender_id, Checkin.due_date == due_date)
    )


class CheckinCreationService:
    """The one place a check-in is instantiated for an (offender, due date) pair."""

    def __init__(self, *, session_factory: Callable[[], Session], orchestrator: NotificationOrchestrator):
        self.session_factory = session_factory
        self.orchestrator = orchestrator

    def create_checkin(self, offender_uuid: uuid.UUID, due_date: date, created_by: str) -> Checkin:
        with self.session_factory() as session, session.begin():
            offender = session.scalar(select(Offender).where(Offender.uuid == offender_uuid))
            if offender is None:
                raise NotFound(f"Offender not found: {offender_uuid}")
            checkin = self._create_for_offender(session, offender, due_date, created_by)

        self.notify_created(checkin, created_by=created_by)
        return checkin

    def create_checkin_for_crn(self, crn: str, due_date: date, created_by: str) -> Checkin:
        with self.session_factory() as session:
            offender_uuid = session.scalar(select(Offender.uuid).where(Offender.crn == crn))
        if offender_uuid is None:
            raise NotFound(f"Offender not found for CRN {crn}")
        return self.create_checkin(offender_uuid, due_date, created_by)

    def create_in_session(self, session: Session, offender: Offender, due_date: date, created_by: str) -> Checkin:
        """Creates the check-in inside the caller's transaction; the caller notifies after committing."""
        return self._create_for_offender(session, offender, due_date, created_by)

    def _create_for_offender(self, session: Session, offender: Offender, due_date: date, created_by: str) -> Checkin:
        if offender.status != OffenderStatus.VERIFIED:
            raise InvalidState(
                f"Offender is {offender.status.value}, checkins can only be created for VERIFIED offenders"
            )
        if find_checkin_for_due_date(session, offender.id, due_date) is not None:
            raise InvalidState(f"Checkin already exists for offender {offender.uuid} due {due_date.isoformat()}")

        checkin = Checkin(
            uuid=uuid.uuid4(),
            offender=offender,
            due_date=due_date,
            status=CheckinStatus.CREATED,
            created_at=datetime.now(timezone.utc),
            created_by=created_by,
            phase_events=[],
        )
        session.add(checkin)
        try:
            session.flush()
        except IntegrityError as exc:
            raise InvalidState(
                f"Checkin already exists for offender {offender.uuid} due {due_date.isoformat()}"
            ) from exc

        logger.info(
            "checkin_created",
            extra={
                "checkin_uuid": str(checkin.uuid),
                "offender_uuid": str(offender.uuid),
                "crn": offender.crn,
                "due_date": due_date.isoformat(),
                "created_by": created_by,
            },
        )
        return checkin

    def notify_created(
        self,
        checkin: Checkin,
        *,
        contact_details: ContactDetails | None = None,
        created_by: str = SYSTEM_ACTOR,
        job_log_id: int | None = None,
    ) -> DispatchSummary:
        note = "Created by scheduled job" if created_by == SYSTEM_ACTOR else f"Created by {created_by}"
        try:
            return self.orchestrator.notify_checkin_created(
                checkin,
                contact_details,
                job_log_id=job_log_id,
                audit_note=note,
            )
        except Exception as exc:
            logger.warning(
                "checkin_created_notification_failed",
                extra={"error": sanitize_exception(exc, checkin.offender.crn, checkin.uuid)},
            )
            return DispatchSummary(failed=1)
