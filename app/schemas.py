from __future__ import annotations

import uuid as uuid_lib
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models import (
    AutomatedIdVerificationResult,
    CheckinInterval,
    CheckinStatus,
    ContactPreference,
    JobRunStatus,
    JobType,
    LogEntryType,
    ManualIdVerificationResult,
    OffenderStatus,
)

CRN_REGEX = r"^[A-Z]\d{6}$"


class OffenderSetupStartRequest(BaseModel):
    crn: str = Field(pattern=CRN_REGEX)
    practitioner_id: str = Field(min_length=1, max_length=255)
    first_checkin: date
    checkin_interval: CheckinInterval
    contact_preference: ContactPreference = ContactPreference.PHONE


class OffenderSetupRead(BaseModel):
    uuid: uuid_lib.UUID
    offender_uuid: uuid_lib.UUID
    practitioner_id: str
    created_at: datetime


class UploadLocationRequest(BaseModel):
    content_type: str = Field(min_length=3, max_length=100)


class UploadLocationRead(BaseModel):
    url: str
    content_type: str
    ttl: str


class OffenderRead(BaseModel):
    uuid: uuid_lib.UUID
    crn: str
    practitioner_id: str
    status: OffenderStatus
    first_checkin: date
    checkin_interval: CheckinInterval
    contact_preference: ContactPreference
    created_at: datetime
    created_by: str

    model_config = ConfigDict(from_attributes=True)


class OffenderStatusChangeRequest(BaseModel):
    requested_by: str = Field(min_length=1, max_length=255)
    reason: str = Field(min_length=1, max_length=4000)


class OffenderDetailsUpdateRequest(BaseModel):
    requested_by: str = Field(min_length=1, max_length=255)
    first_checkin: date
    checkin_interval: CheckinInterval
    contact_preference: ContactPreference | None = None


class PersonalDetailsRead(BaseModel):
    crn: str
    forename: str
    surname: str
    mobile: str | None = None
    email: str | None = None


class EventLogRead(BaseModel):
    uuid: uuid_lib.UUID
    log_entry_type: LogEntryType
    comment: str
    practitioner: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckinRead(BaseModel):
    uuid: uuid_lib.UUID
    crn: str
    offender_uuid: uuid_lib.UUID
    status: CheckinStatus
    due_date: date
    created_at: datetime
    created_by: str
    checkin_started_at: datetime | None = None
    submitted_at: datetime | None = None
    review_started_at: datetime | None = None
    review_started_by: str | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    expired_at: datetime | None = None
    auto_id_check: AutomatedIdVerificationResult | None = None
    manual_id_check: ManualIdVerificationResult | None = None
    risk_feedback: bool | None = None
    survey_response: dict[str, Any] | None = None
    flagged_responses: list[str] = Field(default_factory=list)
    personal_details: PersonalDetailsRead | None = None
    video_url: str | None = None
    snapshot_url: str | None = None
    photo_url: str | None = None
    further_actions: str | None = None
    logs: list[EventLogRead] = Field(default_factory=list)


class CheckinListResponse(BaseModel):
    page: int
    size: int
    items: list[CheckinRead] = Field(default_factory=list)


class CheckinCreateRequest(BaseModel):
    practitioner_id: str = Field(min_length=1, max_length=255)
    due_date: date
    offender_uuid: uuid_lib.UUID | None = None
    crn: str | None = Field(default=None, pattern=CRN_REGEX)


class IdentityVerifyRequest(BaseModel):
    crn: str = Field(pattern=CRN_REGEX)
    forename: str = Field(min_length=1, max_length=255)
    surname: str = Field(min_length=1, max_length=255)
    date_of_birth: date


class IdentityVerifyResponse(BaseModel):
    verified: bool
    error: str | None = None


class CheckinUploadLocationRequest(BaseModel):
    video: str = Field(min_length=3, max_length=100)
    snapshots: list[str] = Field(default_factory=list, max_length=10)


class CheckinUploadLocationResponse(BaseModel):
    video: UploadLocationRead
    snapshots: list[UploadLocationRead] = Field(default_factory=list)


class CheckinSubmitRequest(BaseModel):
    survey: dict[str, Any]


class VideoVerifyResponse(BaseModel):
    result: AutomatedIdVerificationResult


class ReviewStartRequest(BaseModel):
    practitioner_id: str = Field(min_length=1, max_length=255)


class CheckinReviewRequest(BaseModel):
    reviewed_by: str = Field(min_length=1, max_length=255)
    manual_id_check: ManualIdVerificationResult | None = None
    notes: str | None = Field(default=None, max_length=4000)
    missed_checkin_comment: str | None = Field(default=None, max_length=4000)
    risk_feedback: bool | None = None


class CheckinAnnotateRequest(BaseModel):
    updated_by: str = Field(min_length=1, max_length=255)
    notes: str = Field(max_length=4000)


class CheckinInviteRequest(BaseModel):
    practitioner_id: str = Field(min_length=1, max_length=255)


class EventDetailRead(BaseModel):
    event_reference_id: str
    event_type: str
    notes: str
    crn: str
    offender_uuid: uuid_lib.UUID
    checkin_uuid: uuid_lib.UUID | None = None
    timestamp: datetime


class JobRunResponse(BaseModel):
    job: JobType
    accepted: bool
    reason: str | None = None


class JobLogRead(BaseModel):
    id: int
    job_type: JobType
    run_date: date
    status: JobRunStatus
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    ended_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
