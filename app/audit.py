from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from app.logging_utils import sanitize_exception
from app.models import Checkin, EventAudit, Offender
from app.services.case_directory import ContactDetails

logger = logging.getLogger("app.audit")

_TWO_PLACES = Decimal("0.01")


def hours_between(start: datetime | None, end: datetime | None) -> Decimal | None:
    if start is None or end is None:
        return None
    minutes = int((end - start).total_seconds() // 60)
    return (Decimal(minutes) / Decimal(60)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def build_event_audit(
    *,
    event_type: str,
    offender: Offender,
    contact_details: ContactDetails | None = None,
    checkin: Checkin | None = None,
    time_to_submit_hours: Decimal | None = None,
    time_to_review_hours: Decimal | None = None,
    review_duration_hours: Decimal | None = None,
    auto_id_check_result: str | None = None,
    manual_id_check_result: str | None = None,
    notes: str | None = None,
) -> EventAudit:
    practitioner = contact_details.practitioner if contact_details else None
    lau = practitioner.local_admin_unit if practitioner else None
    pdu = practitioner.probation_delivery_unit if practitioner else None
    provider = practitioner.provider if practitioner else None
    return EventAudit(
        event_type=event_type,
        occurred_at=datetime.now(timezone.utc),
        crn=offender.crn,
        practitioner_id=offender.practitioner_id,
        local_admin_unit_code=lau.code if lau else None,
        local_admin_unit_description=lau.description if lau else None,
        pdu_code=pdu.code if pdu else None,
        pdu_description=pdu.description if pdu else None,
        provider_code=provider.code if provider else None,
        provider_description=provider.description if provider else None,
        checkin_uuid=checkin.uuid if checkin else None,
        checkin_status=checkin.status.value if checkin else None,
        checkin_due_date=checkin.due_date if checkin else None,
        time_to_submit_hours=time_to_submit_hours,
        time_to_review_hours=time_to_review_hours,
        review_duration_hours=review_duration_hours,
        auto_id_check_result=auto_id_check_result,
        manual_id_check_result=manual_id_check_result,
        notes=notes,
    )


def write_event_audits(db: Session, audits: list[EventAudit]) -> int:
    """Persists audit rows in their own transaction. Failures are logged, never raised."""
    if not audits:
        return 0
    db.add_all(audits)
    try:
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception(
            "event_audit_write_failed",
            extra={
                "event_types": sorted({audit.event_type for audit in audits}),
                "crns": sorted({audit.crn for audit in audits}),
                "error": sanitize_exception(exc),
            },
        )
        return 0

    logger.info(
        "event_audit_recorded",
        extra={"count": len(audits), "event_types": sorted({audit.event_type for audit in audits})},
    )
    return len(audits)


def audit_setup_completed(db: Session, offender: Offender, contact_details: ContactDetails | None) -> int:
    return write_event_audits(
        db,
        [build_event_audit(event_type="SETUP_COMPLETED", offender=offender, contact_details=contact_details)],
    )


def audit_checkin_created(
    db: Session,
    checkin: Checkin,
    contact_details: ContactDetails | None,
    *,
    notes: str | None = "Created by scheduled job",
) -> int:
    return write_event_audits(
        db,
        [
            build_event_audit(
                event_type="CHECKIN_CREATED",
                offender=checkin.offender,
                contact_details=contact_details,
                checkin=checkin,
                notes=notes,
            )
        ],
    )


def audit_checkin_submitted(db: Session, checkin: Checkin, contact_details: ContactDetails | None) -> int:
    return write_event_audits(
        db,
        [
            build_event_audit(
                event_type="CHECKIN_SUBMITTED",
                offender=checkin.offender,
                contact_details=contact_details,
                checkin=checkin,
                time_to_submit_hours=hours_between(checkin.created_at, checkin.submitted_at),
                auto_id_check_result=checkin.auto_id_check.value if checkin.auto_id_check else None,
            )
        ],
    )


def review_covering_note(checkin: Checkin) -> str | None:
    reviewer = checkin.reviewed_by
    practitioner = checkin.offender.practitioner_id
    if reviewer and reviewer != practitioner:
        return f"Reviewed by {reviewer} (possibly covering for {practitioner})"
    return None


def audit_checkin_reviewed(db: Session, checkin: Checkin, contact_details: ContactDetails | None) -> int:
    return write_event_audits(
        db,
        [
            build_event_audit(
                event_type="CHECKIN_REVIEWED",
                offender=checkin.offender,
                contact_details=contact_details,
                checkin=checkin,
                time_to_review_hours=hours_between(checkin.submitted_at, checkin.review_started_at),
                review_duration_hours=hours_between(checkin.review_started_at, checkin.reviewed_at),
                manual_id_check_result=checkin.manual_id_check.value if checkin.manual_id_check else None,
                notes=review_covering_note(checkin),
            )
        ],
    )


def audit_checkins_expired(db: Session, items: Iterable[tuple[Checkin, ContactDetails | None]]) -> int:
    return write_event_audits(
        db,
        [
            build_event_audit(
                event_type="CHECKIN_EXPIRED",
                offender=checkin.offender,
                contact_details=contact_details,
                checkin=checkin,
                notes="Expired by scheduled job",
            )
            for checkin, contact_details in items
        ],
    )


def audit_checkins_reminded(db: Session, items: Iterable[tuple[Checkin, ContactDetails | None]]) -> int:
    return write_event_audits(
        db,
        [
            build_event_audit(
                event_type="CHECKIN_REMINDER",
                offender=checkin.offender,
                contact_details=contact_details,
                checkin=checkin,
                notes="Reminder sent by scheduled job",
            )
            for checkin, contact_details in items
        ],
    )
