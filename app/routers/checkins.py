from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.container import ServiceContainer, get_container
from app.schemas import (
    CheckinAnnotateRequest,
    CheckinCreateRequest,
    CheckinInviteRequest,
    CheckinListResponse,
    CheckinRead,
    CheckinReviewRequest,
    CheckinSubmitRequest,
    CheckinUploadLocationRequest,
    CheckinUploadLocationResponse,
    EventLogRead,
    IdentityVerifyRequest,
    IdentityVerifyResponse,
    PersonalDetailsRead,
    ReviewStartRequest,
    UploadLocationRead,
    VideoVerifyResponse,
)
from app.services.case_directory import PersonalDetails, PersonName
from app.services.checkins import CheckinListUseCase, CheckinView, UploadLocation
from app.services.survey import flagged_survey_responses

router = APIRouter(prefix="/v2/offender_checkins", tags=["checkins"])


def _checkin_read(view: CheckinView) -> CheckinRead:
    checkin = view.checkin
    details = view.personal_details
    return CheckinRead(
        uuid=checkin.uuid,
        crn=checkin.offender.crn,
        offender_uuid=checkin.offender.uuid,
        status=checkin.status,
        due_date=checkin.due_date,
        created_at=checkin.created_at,
        created_by=checkin.created_by,
        checkin_started_at=checkin.checkin_started_at,
        submitted_at=checkin.submitted_at,
        review_started_at=checkin.review_started_at,
        review_started_by=checkin.review_started_by,
        reviewed_at=checkin.reviewed_at,
        reviewed_by=checkin.reviewed_by,
        expired_at=checkin.expired_at,
        auto_id_check=checkin.auto_id_check,
        manual_id_check=checkin.manual_id_check,
        risk_feedback=checkin.risk_feedback,
        survey_response=checkin.survey_response,
        flagged_responses=flagged_survey_responses(checkin.survey_response),
        personal_details=(
            PersonalDetailsRead(
                crn=details.crn,
                forename=details.name.forename,
                surname=details.name.surname,
                mobile=details.mobile,
                email=details.email,
            )
            if details is not None
            else None
        ),
        video_url=view.video_url,
        snapshot_url=view.snapshot_url,
        photo_url=view.photo_url,
        further_actions=view.further_actions,
        logs=[EventLogRead.model_validate(entry) for entry in view.logs],
    )


def _location_read(location: UploadLocation) -> UploadLocationRead:
    return UploadLocationRead(url=location.url, content_type=location.content_type, ttl=location.ttl)


@router.get("", response_model=CheckinListResponse)
def list_checkins(
    practitioner: str = Query(min_length=1, max_length=255),
    offender: UUID | None = Query(default=None),
    use_case: CheckinListUseCase | None = Query(default=None, alias="useCase"),
    page: int = Query(default=0, ge=0),
    size: int = Query(default=20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> CheckinListResponse:
    result = container.checkin_service.list_checkins(
        practitioner_id=practitioner,
        offender_uuid=offender,
        use_case=use_case,
        page=page,
        size=size,
    )
    return CheckinListResponse(
        page=result.page,
        size=result.size,
        items=[_checkin_read(CheckinView(checkin=item)) for item in result.items],
    )


@router.post("", response_model=CheckinRead, status_code=status.HTTP_201_CREATED)
def create_checkin(
    payload: CheckinCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    view = container.checkin_service.create_checkin(
        due_date=payload.due_date,
        created_by=payload.practitioner_id,
        offender_uuid=payload.offender_uuid,
        crn=payload.crn,
    )
    return _checkin_read(view)


@router.get("/{checkin_uuid}", response_model=CheckinRead)
def get_checkin(
    checkin_uuid: UUID,
    include_personal_details: bool = Query(default=False, alias="include-personal-details"),
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    view = container.checkin_service.get_checkin(checkin_uuid, include_personal_details=include_personal_details)
    return _checkin_read(view)


@router.post("/{checkin_uuid}/identity-verify", response_model=IdentityVerifyResponse)
def verify_identity(
    checkin_uuid: UUID,
    payload: IdentityVerifyRequest,
    container: ServiceContainer = Depends(get_container),
) -> IdentityVerifyResponse:
    details = PersonalDetails(
        crn=payload.crn,
        name=PersonName(forename=payload.forename.strip(), surname=payload.surname.strip()),
        date_of_birth=payload.date_of_birth,
    )
    result = container.checkin_service.validate_identity(checkin_uuid, details)
    return IdentityVerifyResponse(verified=result.verified, error=result.error)


@router.post("/{checkin_uuid}/upload_location", response_model=CheckinUploadLocationResponse)
def checkin_upload_location(
    checkin_uuid: UUID,
    payload: CheckinUploadLocationRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinUploadLocationResponse:
    locations = container.checkin_service.get_upload_locations(checkin_uuid, payload.video, payload.snapshots)
    return CheckinUploadLocationResponse(
        video=_location_read(locations.video),
        snapshots=[_location_read(item) for item in locations.snapshots],
    )


@router.post("/{checkin_uuid}/submit", response_model=CheckinRead)
def submit_checkin(
    checkin_uuid: UUID,
    payload: CheckinSubmitRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    return _checkin_read(container.checkin_service.submit(checkin_uuid, payload.survey))


@router.post("/{checkin_uuid}/video-verify", response_model=VideoVerifyResponse)
def verify_video(
    checkin_uuid: UUID,
    num_snapshots: int = Query(default=1, alias="numSnapshots"),
    container: ServiceContainer = Depends(get_container),
) -> VideoVerifyResponse:
    return VideoVerifyResponse(result=container.checkin_service.verify_face(checkin_uuid, num_snapshots))


@router.post("/{checkin_uuid}/review-started", response_model=CheckinRead)
def start_review(
    checkin_uuid: UUID,
    payload: ReviewStartRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    return _checkin_read(container.checkin_service.start_review(checkin_uuid, payload.practitioner_id))


@router.post("/{checkin_uuid}/review", response_model=CheckinRead)
def review_checkin(
    checkin_uuid: UUID,
    payload: CheckinReviewRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    view = container.checkin_service.review(
        checkin_uuid,
        reviewed_by=payload.reviewed_by,
        manual_id_check=payload.manual_id_check,
        notes=payload.notes,
        missed_checkin_comment=payload.missed_checkin_comment,
        risk_feedback=payload.risk_feedback,
    )
    return _checkin_read(view)


@router.post("/{checkin_uuid}/annotate", response_model=CheckinRead)
def annotate_checkin(
    checkin_uuid: UUID,
    payload: CheckinAnnotateRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    view = container.checkin_service.annotate(checkin_uuid, updated_by=payload.updated_by, notes=payload.notes)
    return _checkin_read(view)


@router.post("/{checkin_uuid}/invite", response_model=CheckinRead)
def resend_invite(
    checkin_uuid: UUID,
    payload: CheckinInviteRequest,
    container: ServiceContainer = Depends(get_container),
) -> CheckinRead:
    return _checkin_read(container.checkin_service.send_invite(checkin_uuid, payload.practitioner_id))
