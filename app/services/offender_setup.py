from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvalidState, NotFound, ValidationFailure
from app.logging_utils import sanitize_exception
from app.models import (
    Checkin,
    CheckinInterval,
    ContactPreference,
    LogEntryType,
    Offender,
    OffenderEventLog,
    OffenderSetup,
    OffenderStatus,
)
from app.services.checkin_creation import CheckinCreationService, find_checkin_for_due_date
from app.services.checkins import UploadLocation
from app.services.notifications import NotificationOrchestrator
from app.services.schedule import business_today
from app.services.storage import ObjectStorage
from app.settings import Settings

logger = logging.getLogger("app.offender_setup")

CRN_PATTERN = re.compile(r"^[A-Z]\d{6}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_setup_by_uuid(session: Session, setup_uuid: uuid.UUID) -> OffenderSetup:
    setup = session.scalar(select(OffenderSetup).where(OffenderSetup.uuid == setup_uuid))
    if setup is None:
        raise NotFound(f"Offender setup not found: {setup_uuid}")
    return setup


def get_offender_by_uuid(session: Session, offender_uuid: uuid.UUID) -> Offender:
    offender = session.scalar(select(Offender).where(Offender.uuid == offender_uuid))
    if offender is None:
        raise NotFound(f"Offender not found: {offender_uuid}")
    return offender


def find_offender_by_crn(session: Session, crn: str) -> Offender | None:
    return session.scalar(select(Offender).where(Offender.crn == crn))


def find_setup_for_offender(session: Session, offender_id: int) -> OffenderSetup | None:
    return session.scalar(select(OffenderSetup).where(OffenderSetup.offender_id == offender_id))


def add_event_log(
    session: Session,
    offender: Offender,
    log_entry_type: LogEntryType,
    comment: str,
    practitioner: str,
    checkin: Checkin | None = None,
) -> OffenderEventLog:
    entry = OffenderEventLog(
        uuid=uuid.uuid4(),
        offender_id=offender.id,
        checkin_id=checkin.id if checkin is not None else None,
        log_entry_type=log_entry_type,
        comment=comment,
        practitioner=practitioner,
        created_at=_utcnow(),
    )
    session.add(entry)
    return entry


class OffenderSetupService:
    """Registration and management of offenders on the remote check-in scheme."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        storage: ObjectStorage,
        orchestrator: NotificationOrchestrator,
        creation_service: CheckinCreationService,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.orchestrator = orchestrator
        self.creation_service = creation_service
        self.settings = settings

    def today(self) -> date:
        return business_today(self.settings.checkin_timezone)

    def _require_not_past(self, first_checkin: date) -> date:
        today = self.today()
        if first_checkin < today:
            raise ValidationFailure("First checkin date cannot be in the past")
        return today

    def start_setup(
        self,
        *,
        crn: str,
        practitioner_id: str,
        first_checkin: date,
        interval: CheckinInterval,
        contact_preference: ContactPreference = ContactPreference.PHONE,
    ) -> OffenderSetup:
        crn = crn.strip().upper()
        if not CRN_PATTERN.match(crn):
            raise ValidationFailure(f"Invalid CRN: {crn}")
        if not practitioner_id.strip():
            raise ValidationFailure("Practitioner id is required")
        self._require_not_past(first_checkin)

        with self.session_factory() as session, session.begin():
            offender = find_offender_by_crn(session, crn)
            if offender is None:
                offender = Offender(
                    uuid=uuid.uuid4(),
                    crn=crn,
                    practitioner_id=practitioner_id,
                    status=OffenderStatus.INITIAL,
                    first_checkin=first_checkin,
                    checkin_interval_days=interval.days,
                    contact_preference=contact_preference,
                    created_at=_utcnow(),
                    updated_at=_utcnow(),
                    created_by=practitioner_id,
                )
                session.add(offender)
                session.flush()
                setup = None
            elif offender.status != OffenderStatus.INITIAL:
                raise InvalidState(
                    f"Offender {crn} is {offender.status.value}, setup can only be restarted while INITIAL"
                )
            else:
                offender.practitioner_id = practitioner_id
                offender.first_checkin = first_checkin
                offender.checkin_interval_days = interval.days
                offender.contact_preference = contact_preference
                setup = find_setup_for_offender(session, offender.id)

            if setup is None:
                setup = OffenderSetup(
                    uuid=uuid.uuid4(),
                    offender=offender,
                    practitioner_id=practitioner_id,
                    created_at=_utcnow(),
                )
                session.add(setup)
            else:
                setup.practitioner_id = practitioner_id
            session.flush()

        logger.info(
            "offender_setup_started",
            extra={"setup_uuid": str(setup.uuid), "offender_uuid": str(offender.uuid), "crn": crn},
        )
        return setup

    def photo_upload_location(self, setup_uuid: uuid.UUID, content_type: str) -> UploadLocation:
        with self.session_factory() as session:
            setup = get_setup_by_uuid(session, setup_uuid)
        if setup.offender.status != OffenderStatus.INITIAL:
            raise InvalidState(f"Offender is {setup.offender.status.value}, setup photo can only be uploaded while INITIAL")
        minutes = self.settings.upload_url_ttl_minutes
        url = self.storage.presigned_put_url(
            self.storage.setup_photo(setup.offender.uuid),
            content_type,
            timedelta(minutes=minutes),
        )
        return UploadLocation(url=url, content_type=content_type, ttl=f"PT{minutes}M")

    def complete_setup(self, setup_uuid: uuid.UUID) -> Offender:
        first_checkin = None
        with self.session_factory() as session, session.begin():
            setup = get_setup_by_uuid(session, setup_uuid)
            offender = setup.offender
            if offender.status != OffenderStatus.INITIAL:
                raise InvalidState(f"Offender is {offender.status.value}, setup can only be completed while INITIAL")
            if not self.storage.is_setup_photo_uploaded(offender.uuid):
                raise ValidationFailure("Setup photo has not been uploaded")

            offender.status = OffenderStatus.VERIFIED
            offender.updated_at = _utcnow()
            add_event_log(session, offender, LogEntryType.SETUP_COMPLETE, "Setup completed", setup.practitioner_id)
            session.flush()
            if offender.first_checkin == self.today():
                first_checkin = self.creation_service.create_in_session(
                    session, offender, offender.first_checkin, setup.practitioner_id
                )

        logger.info("offender_setup_completed", extra={"offender_uuid": str(offender.uuid), "crn": offender.crn})
        try:
            self.orchestrator.notify_setup_completed(offender)
        except Exception as exc:
            logger.warning(
                "setup_completed_notification_failed",
                extra={"error": sanitize_exception(exc, offender.crn, offender.uuid)},
            )
        if first_checkin is not None:
            self.creation_service.notify_created(first_checkin, created_by=setup.practitioner_id)
        return offender

    def terminate_setup(self, setup_uuid: uuid.UUID) -> Offender:
        with self.session_factory() as session, session.begin():
            setup = get_setup_by_uuid(session, setup_uuid)
            offender = setup.offender
            if offender.status != OffenderStatus.INITIAL:
                raise InvalidState(f"Offender is {offender.status.value}, only INITIAL setups can be terminated")
            offender.status = OffenderStatus.INACTIVE
            offender.updated_at = _utcnow()

        logger.info("offender_setup_terminated", extra={"offender_uuid": str(offender.uuid), "crn": offender.crn})
        return offender

    def get_offender(self, offender_uuid: uuid.UUID) -> Offender:
        with self.session_factory() as session:
            return get_offender_by_uuid(session, offender_uuid)

    def deactivate(self, offender_uuid: uuid.UUID, *, requested_by: str, reason: str) -> Offender:
        if not reason or not reason.strip():
            raise ValidationFailure("Reason for deactivation not given")
        with self.session_factory() as session, session.begin():
            offender = get_offender_by_uuid(session, offender_uuid)
            if offender.status != OffenderStatus.VERIFIED:
                raise InvalidState(f"Offender is {offender.status.value}, only VERIFIED offenders can be deactivated")
            offender.status = OffenderStatus.INACTIVE
            offender.updated_at = _utcnow()
            add_event_log(session, offender, LogEntryType.DEACTIVATED, reason.strip(), requested_by)

        logger.info("offender_deactivated", extra={"offender_uuid": str(offender_uuid), "requested_by": requested_by})
        return offender

    def reactivate(self, offender_uuid: uuid.UUID, *, requested_by: str, reason: str) -> Offender:
        if not reason or not reason.strip():
            raise ValidationFailure("Reason for reactivation not given")
        with self.session_factory() as session, session.begin():
            offender = get_offender_by_uuid(session, offender_uuid)
            if offender.status != OffenderStatus.INACTIVE:
                raise InvalidState(f"Offender is {offender.status.value}, only INACTIVE offenders can be reactivated")
            if not self.storage.is_setup_photo_uploaded(offender.uuid):
                raise InvalidState("Offender has no setup photo and cannot be reactivated")
            offender.status = OffenderStatus.VERIFIED
            offender.updated_at = _utcnow()
            add_event_log(session, offender, LogEntryType.REACTIVATED, reason.strip(), requested_by)

        logger.info("offender_reactivated", extra={"offender_uuid": str(offender_uuid), "requested_by": requested_by})
        return offender

    def update_schedule(
        self,
        offender_uuid: uuid.UUID,
        *,
        requested_by: str,
        first_checkin: date,
        interval: CheckinInterval,
        contact_preference: ContactPreference | None = None,
    ) -> Offender:
        today = self._require_not_past(first_checkin)
        created = None
        with self.session_factory() as session, session.begin():
            offender = get_offender_by_uuid(session, offender_uuid)
            if offender.status == OffenderStatus.INACTIVE:
                raise InvalidState("Offender is INACTIVE, schedule cannot be updated")
            offender.first_checkin = first_checkin
            offender.checkin_interval_days = interval.days
            if contact_preference is not None:
                offender.contact_preference = contact_preference
            offender.updated_at = _utcnow()
            session.flush()
            if (
                first_checkin == today
                and offender.status == OffenderStatus.VERIFIED
                and find_checkin_for_due_date(session, offender.id, today) is None
            ):
                created = self.creation_service.create_in_session(session, offender, today, requested_by)

        logger.info(
            "offender_schedule_updated",
            extra={
                "offender_uuid": str(offender_uuid),
                "first_checkin": first_checkin.isoformat(),
                "interval_days": interval.days,
                "requested_by": requested_by,
            },
        )
        if created is not None:
            self.creation_service.notify_created(created, created_by=requested_by)
        return offender
