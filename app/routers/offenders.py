from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.container import ServiceContainer, get_container
from app.schemas import (
    OffenderDetailsUpdateRequest,
    OffenderRead,
    OffenderSetupRead,
    OffenderSetupStartRequest,
    OffenderStatusChangeRequest,
    UploadLocationRead,
    UploadLocationRequest,
)

router = APIRouter(tags=["offenders"])


@router.post("/v2/offender_setup", response_model=OffenderSetupRead, status_code=status.HTTP_201_CREATED)
def start_offender_setup(
    payload: OffenderSetupStartRequest,
    container: ServiceContainer = Depends(get_container),
) -> OffenderSetupRead:
    setup = container.setup_service.start_setup(
        crn=payload.crn,
        practitioner_id=payload.practitioner_id,
        first_checkin=payload.first_checkin,
        interval=payload.checkin_interval,
        contact_preference=payload.contact_preference,
    )
    return OffenderSetupRead(
        uuid=setup.uuid,
        offender_uuid=setup.offender.uuid,
        practitioner_id=setup.practitioner_id,
        created_at=setup.created_at,
    )


@router.post("/v2/offender_setup/{setup_uuid}/upload_location", response_model=UploadLocationRead)
def offender_setup_upload_location(
    setup_uuid: UUID,
    payload: UploadLocationRequest,
    container: ServiceContainer = Depends(get_container),
) -> UploadLocationRead:
    location = container.setup_service.photo_upload_location(setup_uuid, payload.content_type)
    return UploadLocationRead(url=location.url, content_type=location.content_type, ttl=location.ttl)


@router.post("/v2/offender_setup/{setup_uuid}/complete", response_model=OffenderRead)
def complete_offender_setup(
    setup_uuid: UUID,
    container: ServiceContainer = Depends(get_container),
) -> OffenderRead:
    return OffenderRead.model_validate(container.setup_service.complete_setup(setup_uuid))


@router.post("/v2/offender_setup/{setup_uuid}/terminate", response_model=OffenderRead)
def terminate_offender_setup(
    setup_uuid: UUID,
    container: ServiceContainer = Depends(get_container),
) -> OffenderRead:
    return OffenderRead.model_validate(container.setup_service.terminate_setup(setup_uuid))


@router.get("/v2/offenders/{offender_uuid}", response_model=OffenderRead)
def get_offender(
    offender_uuid: UUID,
    container: ServiceContainer = Depends(get_container),
) -> OffenderRead:
    return OffenderRead.model_validate(container.setup_service.get_offender(offender_uuid))


@router.post("/v2/offenders/{offender_uuid}/deactivate", response_model=OffenderRead)
def deactivate_offender(
    offender_uuid: UUID,
    payload: OffenderStatusChangeRequest,
    container: ServiceContainer = Depends(get_container),
) -> OffenderRead:
    offender = container.setup_service.deactivate(
        offender_uuid,
        requested_by=payload.requested_by,
        reason=payload.reason,
    )
    return OffenderRead.model_validate(offender)


@router.post("/v2/offenders/{offender_uuid}/reactivate", response_model=OffenderRead)
def reactivate_offender(
    offender_uuid: UUID,
    payload: OffenderStatusChangeRequest,
    container: ServiceContainer = Depends(get_container),
) -> OffenderRead:
    offender = container.setup_service.reactivate(
        offender_uuid,
        requested_by=payload.requested_by,
        reason=payload.reason,
    )
    return OffenderRead.model_validate(offender)


@router.post("/v2/offenders/{offender_uuid}/update_details", response_model=OffenderRead)
def update_offender_details(
    offender_uuid: UUID,
    payload: OffenderDetailsUpdateRequest,
    container: ServiceContainer = Depends(get_container),
) -> OffenderRead:
    offender = container.setup_service.update_schedule(
        offender_uuid,
        requested_by=payload.requested_by,
        first_checkin=payload.first_checkin,
        interval=payload.checkin_interval,
        contact_preference=payload.contact_preference,
    )
    return OffenderRead.model_validate(offender)
