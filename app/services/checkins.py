from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import InvalidState, NotFound, ValidationFailure
from app.logging_utils import sanitize_exception
from app.models import (
    AutomatedIdVerificationResult,
    Checkin,
    CheckinPhase,
    CheckinStatus,
    LogEntryType,
    ManualIdVerificationResult,
    Offender,
    OffenderEventLog,
    OffenderStatus,
)
from app.services.case_directory import CaseDirectoryClient, ContactDetails, PersonalDetails
from app.services.checkin_creation import CheckinCreationService
from app.services.facial_verification import CheckinVerificationImages, FaceComparer
from app.services.notifications import NotificationOrchestrator
from app.services.storage import ObjectStorage
from app.settings import Settings

logger = logging.getLogger("app.checkins")

IDENTITY_MISMATCH_MESSAGE = "Personal details do not match our records"


class CheckinListUseCase(str, enum.Enum):
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    REVIEWED = "REVIEWED"
    AWAITING_CHECKIN = "AWAITING_CHECKIN"


@dataclass(frozen=True, slots=True)
class IdentityValidationResult:
    verified: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class UploadLocation:
    url: str
    content_type: str
    ttl: str


@dataclass(frozen=True, slots=True)
class UploadLocations:
    video: UploadLocation
    snapshots: list[UploadLocation]


@dataclass(slots=True)
class CheckinView:
    checkin: Checkin
    personal_details: ContactDetails | None = None
    video_url: str | None = None
    snapshot_url: str | None = None
    photo_url: str | None = None
    logs: list[OffenderEventLog] = field(default_factory=list)
    further_actions: str | None = None


@dataclass(frozen=True, slots=True)
class CheckinPage:
    page: int
    size: int
    items: list[Checkin]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_minutes(minutes: int) -> str:
    return f"PT{minutes}M"


def get_checkin_by_uuid(session: Session, checkin_uuid: uuid.UUID, *, for_update: bool = False) -> Checkin:
    statement = select(Checkin).where(Checkin.uuid == checkin_uuid)
    if for_update:
        statement = statement.with_for_update(of=Checkin)
    checkin = session.scalar(statement)
    if checkin is None:
        raise NotFound(f"Checkin not found: {checkin_uuid}")
    return checkin


def list_checkin_logs(session: Session, checkin_id: int) -> list[OffenderEventLog]:
    return list(
        session.scalars(
            select(OffenderEventLog)
            .where(OffenderEventLog.checkin_id == checkin_id)
            .order_by(OffenderEventLog.created_at.desc(), OffenderEventLog.id.desc())
        ).all()
    )


def query_checkins(
    session: Session,
    *,
    practitioner_id: str,
    offender_uuid: uuid.UUID | None,
    use_case: CheckinListUseCase | None,
    page: int,
    size: int,
) -> list[Checkin]:
    conditions = [Offender.practitioner_id == practitioner_id]
    if offender_uuid is not None:
        conditions.append(Offender.uuid == offender_uuid)
    if use_case == CheckinListUseCase.NEEDS_ATTENTION:
        # Expired check-ins move to REVIEWED once reviewed, so EXPIRED here is always unreviewed.
        conditions.append(Checkin.status.in_([CheckinStatus.SUBMITTED, CheckinStatus.EXPIRED]))
    elif use_case == CheckinListUseCase.REVIEWED:
        conditions.append(Checkin.status == CheckinStatus.REVIEWED)
    elif use_case == CheckinListUseCase.AWAITING_CHECKIN:
        conditions.append(Checkin.status == CheckinStatus.CREATED)

    statement = (
        select(Checkin)
        .join(Offender, Checkin.offender_id == Offender.id)
        .where(and_(*conditions))
        .order_by(Checkin.due_date.desc(), Checkin.id.desc())
        .offset(page * size)
        .limit(size)
    )
    return list(session.scalars(statement).unique().all())


def require_transition(checkin: Checkin, target: CheckinStatus) -> None:
    if not checkin.status.can_transition_to(target):
        raise InvalidState(f"Checkin is {checkin.status.value}, cannot move to {target.value}")


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class CheckinService:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        case_directory: CaseDirectoryClient,
        storage: ObjectStorage,
        face_comparer: FaceComparer,
        orchestrator: NotificationOrchestrator,
        creation_service: CheckinCreationService,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.case_directory = case_directory
        self.storage = storage
        self.face_comparer = face_comparer
        self.orchestrator = orchestrator
        self.creation_service = creation_service
        self.settings = settings

    @property
    def read_url_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.read_url_ttl_minutes)

    @property
    def upload_url_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.upload_url_ttl_minutes)

    def _media_urls(self, checkin: Checkin) -> tuple[str | None, str | None, str | None]:
        video = self.storage.checkin_video(checkin.uuid)
        snapshot = self.storage.checkin_snapshot(checkin.uuid, 0)
        photo = self.storage.setup_photo(checkin.offender.uuid)
        urls: list[str | None] = []
        for coordinate in (video, snapshot, photo):
            if self.storage.exists(coordinate):
                urls.append(self.storage.presigned_get_url(coordinate, self.read_url_ttl))
            else:
                urls.append(None)
        return urls[0], urls[1], urls[2]

    def get_checkin(self, checkin_uuid: uuid.UUID, *, include_personal_details: bool = False) -> CheckinView:
        with self.session_factory() as session:
            checkin = get_checkin_by_uuid(session, checkin_uuid)
            logs = list_checkin_logs(session, checkin.id)

        personal_details = None
        if include_personal_details:
            personal_details = self.case_directory.get_contact_details(checkin.offender.crn)
        video_url, snapshot_url, photo_url = self._media_urls(checkin)
        further_actions = next(
            (entry.comment for entry in logs if entry.log_entry_type == LogEntryType.REVIEWED_AFTER_SUBMISSION),
            None,
        )
        return CheckinView(
            checkin=checkin,
            personal_details=personal_details,
            video_url=video_url,
            snapshot_url=snapshot_url,
            photo_url=photo_url,
            logs=logs,
            further_actions=further_actions,
        )

    def validate_identity(self, checkin_uuid: uuid.UUID, details: PersonalDetails) -> IdentityValidationResult:
        with self.session_factory() as session:
            checkin = get_checkin_by_uuid(session, checkin_uuid)
            if checkin.offender.crn != details.crn:
                logger.warning(
                    "checkin_identity_crn_mismatch",
                    extra={"checkin_uuid": str(checkin_uuid), "expected_crn": checkin.offender.crn},
                )
                raise NotFound(f"Checkin not found: {checkin_uuid}")
            if checkin.status != CheckinStatus.CREATED:
                raise InvalidState(f"Checkin is {checkin.status.value}, identity can only be verified while CREATED")

        if not self.case_directory.validate_personal_details(details):
            logger.info("checkin_identity_rejected", extra={"checkin_uuid": str(checkin_uuid)})
            return IdentityValidationResult(verified=False, error=IDENTITY_MISMATCH_MESSAGE)

        try:
            with self.session_factory() as session, session.begin():
                checkin = get_checkin_by_uuid(session, checkin_uuid, for_update=True)
                if checkin.checkin_started_at is None:
                    checkin.record_phase(CheckinPhase.STARTED, occurred_at=_utcnow())
        except IntegrityError:
            logger.info("checkin_already_started", extra={"checkin_uuid": str(checkin_uuid)})

        logger.info("checkin_identity_verified", extra={"checkin_uuid": str(checkin_uuid)})
        return IdentityValidationResult(verified=True)

    def get_upload_locations(
        self,
        checkin_uuid: uuid.UUID,
        video_content_type: str,
        snapshot_content_types: list[str],
    ) -> UploadLocations:
        with self.session_factory() as session:
            checkin = get_checkin_by_uuid(session, checkin_uuid)
        if checkin.status != CheckinStatus.CREATED:
            raise InvalidState(f"Cannot upload to checkin with status: {checkin.status.value}")
        if len(snapshot_content_types) > self.settings.max_snapshots_per_checkin:
            raise ValidationFailure(
                f"At most {self.settings.max_snapshots_per_checkin} snapshots can be uploaded"
            )

        ttl = self.upload_url_ttl
        ttl_label = _iso_minutes(self.settings.upload_url_ttl_minutes)
        video = UploadLocation(
            url=self.storage.presigned_put_url(self.storage.checkin_video(checkin.uuid), video_content_type, ttl),
            content_type=video_content_type,
            ttl=ttl_label,
        )
        snapshots = [
            UploadLocation(
                url=self.storage.presigned_put_url(
                    self.storage.checkin_snapshot(checkin.uuid, index), content_type, ttl
                ),
                content_type=content_type,
                ttl=ttl_label,
            )
            for index, content_type in enumerate(snapshot_content_types)
        ]
        return UploadLocations(video=video, snapshots=snapshots)

    def submit(self, checkin_uuid: uuid.UUID, survey: dict[str, Any]) -> CheckinView:
        with self.session_factory() as session:
            self._require_submittable(get_checkin_by_uuid(session, checkin_uuid))
        # Storage is checked before the row lock is taken and the state is re-validated under it.
        if not self.storage.is_checkin_video_uploaded(checkin_uuid):
            raise ValidationFailure("Video not uploaded")

        with self.session_factory() as session, session.begin():
            checkin = get_checkin_by_uuid(session, checkin_uuid, for_update=True)
            self._require_submittable(checkin)
            checkin.survey_response = survey
            checkin.status = CheckinStatus.SUBMITTED
            checkin.record_phase(CheckinPhase.SUBMITTED, occurred_at=_utcnow())

        logger.info("checkin_submitted", extra={"checkin_uuid": str(checkin_uuid), "crn": checkin.offender.crn})
        self._notify(self.orchestrator.notify_checkin_submitted, checkin)
        return CheckinView(checkin=checkin)

    @staticmethod
    def _require_submittable(checkin: Checkin) -> None:
        if checkin.status in {CheckinStatus.SUBMITTED, CheckinStatus.REVIEWED}:
            raise InvalidState("Checkin already submitted")
        require_transition(checkin, CheckinStatus.SUBMITTED)
        if checkin.checkin_started_at is None:
            raise InvalidState("Identity must be verified before submission")

    def verify_face(self, checkin_uuid: uuid.UUID, num_snapshots: int = 1) -> AutomatedIdVerificationResult:
        with self.session_factory() as session:
            checkin = get_checkin_by_uuid(session, checkin_uuid)
        if checkin.status != CheckinStatus.CREATED:
            raise InvalidState("Checkin already submitted")
        offender = checkin.offender
        if offender.status != OffenderStatus.VERIFIED:
            logger.warning(
                "facial_verification_offender_not_verified",
                extra={"offender_uuid": str(offender.uuid), "status": offender.status.value},
            )
            raise InvalidState("Offender setup not completed - cannot perform facial verification")
        if num_snapshots < 1:
            raise ValidationFailure("numSnapshots must be at least 1")
        if num_snapshots > self.settings.max_snapshots_per_checkin:
            raise ValidationFailure(f"numSnapshots must be at most {self.settings.max_snapshots_per_checkin}")

        snapshots = [self.storage.checkin_snapshot(checkin.uuid, index) for index in range(num_snapshots)]
        for index, coordinate in enumerate(snapshots):
            if not self.storage.exists(coordinate):
                raise ValidationFailure(f"Snapshot at index {index} not uploaded")
        reference = self.storage.setup_photo(offender.uuid)
        if not self.storage.exists(reference):
            raise ValidationFailure("Setup photo not available for facial recognition")

        result = self.face_comparer.verify_checkin_images(
            CheckinVerificationImages(reference=reference, snapshots=snapshots),
            self.settings.face_similarity_threshold,
        ).result()

        with self.session_factory() as session, session.begin():
            stored = get_checkin_by_uuid(session, checkin_uuid, for_update=True)
            stored.auto_id_check = result

        log = logger.warning if result in {AutomatedIdVerificationResult.ERROR, AutomatedIdVerificationResult.NO_FACE_DETECTED} else logger.info
        log("checkin_face_verified", extra={"checkin_uuid": str(checkin_uuid), "result": result.value})
        return result

    def start_review(self, checkin_uuid: uuid.UUID, practitioner_id: str) -> CheckinView:
        with self.session_factory() as session, session.begin():
            checkin = get_checkin_by_uuid(session, checkin_uuid, for_update=True)
            if checkin.status not in {CheckinStatus.SUBMITTED, CheckinStatus.EXPIRED}:
                raise InvalidState("Checkin must be submitted or expired before being reviewed")
            checkin.record_phase(CheckinPhase.REVIEW_STARTED, occurred_at=_utcnow(), actor=practitioner_id)

        logger.info(
            "checkin_review_started",
            extra={"checkin_uuid": str(checkin_uuid), "practitioner_id": practitioner_id},
        )
        video_url, snapshot_url, photo_url = self._media_urls(checkin)
        return CheckinView(checkin=checkin, video_url=video_url, snapshot_url=snapshot_url, photo_url=photo_url)

    def review(
        self,
        checkin_uuid: uuid.UUID,
        *,
        reviewed_by: str,
        manual_id_check: ManualIdVerificationResult | None,
        notes: str | None = None,
        missed_checkin_comment: str | None = None,
        risk_feedback: bool | None = None,
    ) -> CheckinView:
        with self.session_factory() as session, session.begin():
            checkin = get_checkin_by_uuid(session, checkin_uuid, for_update=True)
            if checkin.status == CheckinStatus.EXPIRED:
                comment, log_entry_type = missed_checkin_comment, LogEntryType.REVIEWED_AFTER_EXPIRY
                if _blank(comment):
                    raise ValidationFailure("Reason for missed checkin not given")
            elif checkin.status == CheckinStatus.SUBMITTED:
                comment, log_entry_type = notes, LogEntryType.REVIEWED_AFTER_SUBMISSION
                if _blank(comment):
                    raise ValidationFailure("No review comment given")
            else:
                raise InvalidState(f"Can't review checkin with status {checkin.status.value}")
            require_transition(checkin, CheckinStatus.REVIEWED)

            now_utc = _utcnow()
            session.add(
                OffenderEventLog(
                    uuid=uuid.uuid4(),
                    offender_id=checkin.offender_id,
                    checkin_id=checkin.id,
                    log_entry_type=log_entry_type,
                    comment=(comment or "").strip(),
                    practitioner=reviewed_by,
                    created_at=now_utc,
                )
            )
            checkin.status = CheckinStatus.REVIEWED
            checkin.manual_id_check = manual_id_check
            checkin.risk_feedback = risk_feedback
            checkin.record_phase(CheckinPhase.REVIEWED, occurred_at=now_utc, actor=reviewed_by)

        logger.info(
            "checkin_reviewed",
            extra={
                "checkin_uuid": str(checkin_uuid),
                "reviewed_by": reviewed_by,
                "log_entry_type": log_entry_type.value,
            },
        )
        self._notify(self.orchestrator.notify_checkin_reviewed, checkin)
        return CheckinView(checkin=checkin)

    def annotate(self, checkin_uuid: uuid.UUID, *, updated_by: str, notes: str) -> CheckinView:
        with self.session_factory() as session, session.begin():
            checkin = get_checkin_by_uuid(session, checkin_uuid)
            if checkin.status not in {CheckinStatus.REVIEWED, CheckinStatus.EXPIRED}:
                raise InvalidState("Checkin must be reviewed before being annotated")
            if _blank(notes):
                raise ValidationFailure("No annotation notes given")
            session.add(
                OffenderEventLog(
                    uuid=uuid.uuid4(),
                    offender_id=checkin.offender_id,
                    checkin_id=checkin.id,
                    log_entry_type=LogEntryType.ANNOTATED,
                    comment=notes.strip(),
                    practitioner=updated_by,
                    created_at=_utcnow(),
                )
            )

        logger.info("checkin_annotated", extra={"checkin_uuid": str(checkin_uuid), "updated_by": updated_by})
        self._notify(self.orchestrator.notify_checkin_updated, checkin)
        return CheckinView(checkin=checkin)

    def create_checkin(
        self,
        *,
        due_date: date,
        created_by: str,
        offender_uuid: uuid.UUID | None = None,
        crn: str | None = None,
    ) -> CheckinView:
        if offender_uuid is not None:
            checkin = self.creation_service.create_checkin(offender_uuid, due_date, created_by)
        elif crn:
            checkin = self.creation_service.create_checkin_for_crn(crn, due_date, created_by)
        else:
            raise ValidationFailure("Either offender or crn must be given")
        return CheckinView(checkin=checkin)

    def send_invite(self, checkin_uuid: uuid.UUID, practitioner_id: str) -> CheckinView:
        with self.session_factory() as session:
            checkin = get_checkin_by_uuid(session, checkin_uuid)
        if checkin.status != CheckinStatus.CREATED:
            raise InvalidState(f"Checkin is {checkin.status.value}, invites can only be sent while CREATED")
        logger.info(
            "checkin_invite_resend_requested",
            extra={"checkin_uuid": str(checkin_uuid), "practitioner_id": practitioner_id},
        )
        self.creation_service.notify_created(checkin, created_by=practitioner_id)
        return CheckinView(checkin=checkin)

    def list_checkins(
        self,
        *,
        practitioner_id: str,
        offender_uuid: uuid.UUID | None = None,
        use_case: CheckinListUseCase | None = None,
        page: int = 0,
        size: int = 20,
    ) -> CheckinPage:
        if page < 0:
            raise ValidationFailure("page must not be negative")
        if size < 1 or size > 100:
            raise ValidationFailure("size must be between 1 and 100")
        with self.session_factory() as session:
            items = query_checkins(
                session,
                practitioner_id=practitioner_id,
                offender_uuid=offender_uuid,
                use_case=use_case,
                page=page,
                size=size,
            )
        return CheckinPage(page=page, size=size, items=items)

    def _notify(self, notify: Callable[[Checkin], Any], checkin: Checkin) -> None:
        try:
            notify(checkin)
        except Exception as exc:
            logger.error(
                "checkin_notification_failed",
                extra={"error": sanitize_exception(exc, checkin.offender.crn, checkin.uuid)},
            )
