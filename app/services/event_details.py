from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Checkin, Offender
from app.services.domain_events import DomainEventType
from app.services.survey import flagged_survey_responses

logger = logging.getLogger("app.event_details")


@dataclass(frozen=True, slots=True)
class EventDetail:
    event_reference_id: str
    event_type: str
    notes: str
    crn: str
    offender_uuid: uuid.UUID
    checkin_uuid: uuid.UUID | None
    timestamp: datetime


def _title(event_name: str) -> str:
    return " ".join(word.capitalize() for word in event_name.split("_"))


def _setup_notes(offender: Offender) -> str:
    lines = [
        "Registration Completed",
        f"Offender UUID: {offender.uuid}",
        f"CRN: {offender.crn}",
        f"Practitioner: {offender.practitioner_id}",
        f"Status: {offender.status.value}",
        f"First check-in: {offender.first_checkin.isoformat()}",
        f"Check-in interval: {offender.checkin_interval.value}",
        f"Created at: {offender.created_at.isoformat()}",
        f"Created by: {offender.created_by}",
    ]
    return "\n".join(lines)


def _checkin_notes(checkin: Checkin, event_name: str) -> str:
    lines = [
        _title(event_name),
        f"Checkin UUID: {checkin.uuid}",
        f"CRN: {checkin.offender.crn}",
        f"Status: {checkin.status.value}",
        f"Due date: {checkin.due_date.isoformat()}",
        f"Created at: {checkin.created_at.isoformat()}",
    ]
    if checkin.checkin_started_at:
        lines.append(f"Checkin started at: {checkin.checkin_started_at.isoformat()}")
    if checkin.submitted_at:
        lines.append(f"Submitted at: {checkin.submitted_at.isoformat()}")
    if checkin.auto_id_check:
        lines.append(f"Automated ID check: {checkin.auto_id_check.value}")
    if event_name in {"CHECKIN_REVIEWED", "CHECKIN_UPDATED"}:
        if checkin.reviewed_at:
            lines.append(f"Reviewed at: {checkin.reviewed_at.isoformat()}")
        if checkin.reviewed_by:
            lines.append(f"Reviewed by: {checkin.reviewed_by}")
        if checkin.manual_id_check:
            lines.append(f"Manual ID check: {checkin.manual_id_check.value}")
    if event_name == "CHECKIN_EXPIRED" and checkin.expired_at:
        lines.append(f"Expired at: {checkin.expired_at.isoformat()}")
    if checkin.survey_response:
        lines.append(f"Survey response: {checkin.survey_response}")
        flagged = flagged_survey_responses(checkin.survey_response)
        if flagged:
            lines.append(f"Flagged responses: {', '.join(flagged)}")
    return "\n".join(lines)


def _checkin_timestamp(checkin: Checkin, event_name: str) -> datetime:
    if event_name == "CHECKIN_SUBMITTED":
        return checkin.submitted_at or checkin.created_at
    if event_name in {"CHECKIN_REVIEWED", "CHECKIN_UPDATED"}:
        return checkin.reviewed_at or checkin.created_at
    if event_name == "CHECKIN_EXPIRED":
        return checkin.expired_at or checkin.created_at
    return checkin.created_at


def get_event_detail(db: Session, segment: str, subject_uuid: uuid.UUID) -> EventDetail | None:
    event_type = DomainEventType.from_path(segment)
    if event_type is None:
        logger.warning("event_detail_unknown_segment", extra={"segment": segment})
        return None

    if event_type is DomainEventType.SETUP_COMPLETED:
        offender = db.scalar(select(Offender).where(Offender.uuid == subject_uuid))
        if offender is None:
            logger.warning("event_detail_offender_not_found", extra={"uuid": str(subject_uuid)})
            return None
        return EventDetail(
            event_reference_id=f"{event_type.name}-{subject_uuid}",
            event_type=event_type.name,
            notes=_setup_notes(offender),
            crn=offender.crn,
            offender_uuid=offender.uuid,
            checkin_uuid=None,
            timestamp=offender.created_at,
        )

    checkin = db.scalar(select(Checkin).where(Checkin.uuid == subject_uuid))
    if checkin is None:
        logger.warning("event_detail_checkin_not_found", extra={"uuid": str(subject_uuid)})
        return None
    return EventDetail(
        event_reference_id=f"{event_type.name}-{subject_uuid}",
        event_type=event_type.name,
        notes=_checkin_notes(checkin, event_type.name),
        crn=checkin.offender.crn,
        offender_uuid=checkin.offender.uuid,
        checkin_uuid=checkin.uuid,
        timestamp=_checkin_timestamp(checkin, event_type.name),
    )


def get_event_detail_by_url(db: Session, detail_url: str) -> EventDetail | None:
    """Accepts relative (``/v2/events/...``) and absolute detail urls."""
    _, marker, tail = detail_url.partition("/v2/events/")
    parts = [part for part in tail.split("/") if part] if marker else []
    if len(parts) < 2:
        logger.warning("event_detail_invalid_url", extra={"detail_url": detail_url})
        return None
    try:
        subject_uuid = uuid.UUID(parts[1])
    except ValueError:
        logger.warning("event_detail_invalid_uuid", extra={"detail_url": detail_url})
        return None
    return get_event_detail(db, parts[0], subject_uuid)
