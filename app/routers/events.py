from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import NotFound
from app.schemas import EventDetailRead
from app.services.event_details import get_event_detail

router = APIRouter(tags=["events"])


@router.get("/v2/events/{segment}/{subject_uuid}", response_model=EventDetailRead)
def read_event_detail(
    segment: str,
    subject_uuid: UUID,
    db: Session = Depends(get_db),
) -> EventDetailRead:
    detail = get_event_detail(db, segment, subject_uuid)
    if detail is None:
        raise NotFound(f"No event detail for {segment}/{subject_uuid}")
    return EventDetailRead(
        event_reference_id=detail.event_reference_id,
        event_type=detail.event_type,
        notes=detail.notes,
        crn=detail.crn,
        offender_uuid=detail.offender_uuid,
        checkin_uuid=detail.checkin_uuid,
        timestamp=detail.timestamp,
    )
