from __future__ import annotations

import enum
import uuid as uuid_lib
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class OffenderStatus(str, enum.Enum):
    INITIAL = "INITIAL"
    VERIFIED = "VERIFIED"
    INACTIVE = "INACTIVE"

    def can_transition_to(self, target: OffenderStatus) -> bool:
        return target in _OFFENDER_TRANSITIONS[self]


_OFFENDER_TRANSITIONS: dict[OffenderStatus, frozenset[OffenderStatus]] = {
    OffenderStatus.INITIAL: frozenset({OffenderStatus.VERIFIED, OffenderStatus.INACTIVE}),
    OffenderStatus.VERIFIED: frozenset({OffenderStatus.INACTIVE}),
    OffenderStatus.INACTIVE: frozenset({OffenderStatus.VERIFIED}),
}


class CheckinStatus(str, enum.Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    REVIEWED = "REVIEWED"
    EXPIRED = "EXPIRED"

    def can_transition_to(self, target: CheckinStatus) -> bool:
        return target in _CHECKIN_TRANSITIONS[self]


_CHECKIN_TRANSITIONS: dict[CheckinStatus, frozenset[CheckinStatus]] = {
    CheckinStatus.CREATED: frozenset({CheckinStatus.SUBMITTED, CheckinStatus.EXPIRED}),
    CheckinStatus.SUBMITTED: frozenset({CheckinStatus.REVIEWED}),
    CheckinStatus.EXPIRED: frozenset({CheckinStatus.REVIEWED}),
    CheckinStatus.REVIEWED: frozenset(),
}


class CheckinInterval(str, enum.Enum):
    WEEKLY = "WEEKLY"
    TWO_WEEKS = "TWO_WEEKS"
    FOUR_WEEKS = "FOUR_WEEKS"
    EIGHT_WEEKS = "EIGHT_WEEKS"

    @property
    def days(self) -> int:
        return _INTERVAL_DAYS[self]

    @property
    def frequency_label(self) -> str:
        return _INTERVAL_LABELS[self]

    @classmethod
    def from_days(cls, days: int) -> CheckinInterval:
        for interval, interval_days in _INTERVAL_DAYS.items():
            if interval_days == days:
                return interval
        raise ValueError(f"Unsupported checkin interval: {days} days")


_INTERVAL_DAYS = {
    CheckinInterval.WEEKLY: 7,
    CheckinInterval.TWO_WEEKS: 14,
    CheckinInterval.FOUR_WEEKS: 28,
    CheckinInterval.EIGHT_WEEKS: 56,
}
_INTERVAL_LABELS = {
    CheckinInterval.WEEKLY: "week",
    CheckinInterval.TWO_WEEKS: "two weeks",
    CheckinInterval.FOUR_WEEKS: "four weeks",
    CheckinInterval.EIGHT_WEEKS: "eight weeks",
}


class ContactPreference(str, enum.Enum):
    PHONE = "PHONE"
    EMAIL = "EMAIL"


class AutomatedIdVerificationResult(str, enum.Enum):
    MATCH = "MATCH"
    NO_MATCH = "NO_MATCH"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    ERROR = "ERROR"


class ManualIdVerificationResult(str, enum.Enum):
    MATCH = "MATCH"
    NO_MATCH = "NO_MATCH"


class CheckinPhase(str, enum.Enum):
    STARTED = "STARTED"
    SUBMITTED = "SUBMITTED"
    REVIEW_STARTED = "REVIEW_STARTED"
    REVIEWED = "REVIEWED"
    EXPIRED = "EXPIRED"


class LogEntryType(str, enum.Enum):
    SETUP_COMPLETE = "setup-complete"
    DEACTIVATED = "deactivated"
    REACTIVATED = "reactivated"
    REVIEWED_AFTER_SUBMISSION = "reviewed-after-submission"
    REVIEWED_AFTER_EXPIRY = "reviewed-after-expiry"
    ANNOTATED = "annotated"


class RecipientType(str, enum.Enum):
    OFFENDER = "OFFENDER"
    PRACTITIONER = "PRACTITIONER"


class NotificationChannelType(str, enum.Enum):
    SMS = "SMS"
    EMAIL = "EMAIL"


class NotificationEventType(str, enum.Enum):
    SETUP_COMPLETED = "SETUP_COMPLETED"
    CHECKIN_CREATED = "CHECKIN_CREATED"
    CHECKIN_SUBMITTED = "CHECKIN_SUBMITTED"
    CHECKIN_EXPIRED = "CHECKIN_EXPIRED"
    CHECKIN_REMINDER = "CHECKIN_REMINDER"


class JobType(str, enum.Enum):
    CHECKIN_CREATION = "CHECKIN_CREATION"
    CHECKIN_EXPIRY = "CHECKIN_EXPIRY"
    CHECKIN_REMINDER = "CHECKIN_REMINDER"
    JOB_NOTIFICATION_STATUS = "JOB_NOTIFICATION_STATUS"
    GENERIC_NOTIFICATION_STATUS = "GENERIC_NOTIFICATION_STATUS"


class JobRunStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class Offender(Base):
    __tablename__ = "offenders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[uuid_lib.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
        default=uuid_lib.uuid4,
    )
    crn: Mapped[str] = mapped_column(String(7), nullable=False, unique=True)
    practitioner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[OffenderStatus] = mapped_column(
        Enum(OffenderStatus, name="offender_status"),
        nullable=False,
        default=OffenderStatus.INITIAL,
        index=True,
    )
    first_checkin: Mapped[date] = mapped_column(Date, nullable=False)
    checkin_interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    contact_preference: Mapped[ContactPreference] = mapped_column(
        Enum(ContactPreference, name="contact_preference"),
        nullable=False,
        default=ContactPreference.PHONE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    setup: Mapped[OffenderSetup | None] = relationship(back_populates="offender", uselist=False)
    checkins: Mapped[list[Checkin]] = relationship(back_populates="offender")

    @property
    def checkin_interval(self) -> CheckinInterval:
        return CheckinInterval.from_days(self.checkin_interval_days)


class OffenderSetup(Base):
    __tablename__ = "offender_setups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[uuid_lib.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
        default=uuid_lib.uuid4,
    )
    offender_id: Mapped[int] = mapped_column(
        ForeignKey("offenders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    practitioner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    offender: Mapped[Offender] = relationship(back_populates="setup", lazy="joined")


class Checkin(Base):
    __tablename__ = "checkins"
    __table_args__ = (
        UniqueConstraint("offender_id", "due_date", name="uq_checkins_offender_due_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[uuid_lib.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
        default=uuid_lib.uuid4,
    )
    offender_id: Mapped[int] = mapped_column(
        ForeignKey("offenders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[CheckinStatus] = mapped_column(
        Enum(CheckinStatus, name="checkin_status"),
        nullable=False,
        default=CheckinStatus.CREATED,
        index=True,
    )
    survey_response: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    auto_id_check: Mapped[AutomatedIdVerificationResult | None] = mapped_column(
        Enum(AutomatedIdVerificationResult, name="automated_id_verification_result"),
        nullable=True,
    )
    manual_id_check: Mapped[ManualIdVerificationResult | None] = mapped_column(
        Enum(ManualIdVerificationResult, name="manual_id_verification_result"),
        nullable=True,
    )
    risk_feedback: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)

    offender: Mapped[Offender] = relationship(back_populates="checkins", lazy="joined")
    phase_events: Mapped[list[CheckinPhaseEvent]] = relationship(
        back_populates="checkin",
        order_by="CheckinPhaseEvent.occurred_at",
        lazy="selectin",
    )

    def record_phase(self, phase: CheckinPhase, *, occurred_at: datetime, actor: str | None = None) -> CheckinPhaseEvent:
        event = CheckinPhaseEvent(phase=phase, actor=actor, occurred_at=occurred_at)
        self.phase_events.append(event)
        return event

    def _phase_events(self, phase: CheckinPhase) -> list[CheckinPhaseEvent]:
        return [event for event in self.phase_events if event.phase == phase]

    def _first_phase_at(self, phase: CheckinPhase) -> datetime | None:
        events = self._phase_events(phase)
        return events[0].occurred_at if events else None

    def _last_phase(self, phase: CheckinPhase) -> CheckinPhaseEvent | None:
        events = self._phase_events(phase)
        return events[-1] if events else None

    @property
    def checkin_started_at(self) -> datetime | None:
        return self._first_phase_at(CheckinPhase.STARTED)

    @property
    def submitted_at(self) -> datetime | None:
        return self._first_phase_at(CheckinPhase.SUBMITTED)

    @property
    def expired_at(self) -> datetime | None:
        return self._first_phase_at(CheckinPhase.EXPIRED)

    @property
    def review_started_at(self) -> datetime | None:
        event = self._last_phase(CheckinPhase.REVIEW_STARTED)
        return event.occurred_at if event else None

    @property
    def review_started_by(self) -> str | None:
        event = self._last_phase(CheckinPhase.REVIEW_STARTED)
        return event.actor if event else None

    @property
    def reviewed_at(self) -> datetime | None:
        event = self._last_phase(CheckinPhase.REVIEWED)
        return event.occurred_at if event else None

    @property
    def reviewed_by(self) -> str | None:
        event = self._last_phase(CheckinPhase.REVIEWED)
        return event.actor if event else None


class CheckinPhaseEvent(Base):
    __tablename__ = "checkin_phase_events"
    __table_args__ = (
        Index(
            "uq_checkin_phase_events_started_once",
            "checkin_id",
            "phase",
            unique=True,
            postgresql_where=text("phase = 'STARTED'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    checkin_id: Mapped[int] = mapped_column(
        ForeignKey("checkins.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phase: Mapped[CheckinPhase] = mapped_column(Enum(CheckinPhase, name="checkin_phase"), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    checkin: Mapped[Checkin] = relationship(back_populates="phase_events")


class OffenderEventLog(Base):
    __tablename__ = "offender_event_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uuid: Mapped[uuid_lib.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
        default=uuid_lib.uuid4,
    )
    offender_id: Mapped[int] = mapped_column(
        ForeignKey("offenders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    checkin_id: Mapped[int | None] = mapped_column(
        ForeignKey("checkins.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    log_entry_type: Mapped[LogEntryType] = mapped_column(
        Enum(LogEntryType, name="log_entry_type", values_callable=lambda items: [item.value for item in items]),
        nullable=False,
    )
    comment: Mapped[str] = mapped_column(Text, nullable=False)
    practitioner: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    notification_id: Mapped[uuid_lib.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
        default=uuid_lib.uuid4,
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    recipient_type: Mapped[str] = mapped_column(String(20), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    offender_id: Mapped[int | None] = mapped_column(
        ForeignKey("offenders.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    practitioner_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        default="created",
        server_default=text("'created'"),
        index=True,
    )
    reference: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    template_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    job_log_id: Mapped[int | None] = mapped_column(
        ForeignKey("job_logs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class EventAudit(Base):
    __tablename__ = "event_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    crn: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    practitioner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    local_admin_unit_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    local_admin_unit_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pdu_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pdu_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    provider_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checkin_uuid: Mapped[uuid_lib.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    checkin_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    checkin_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    time_to_submit_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    time_to_review_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    review_duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    auto_id_check_result: Mapped[str | None] = mapped_column(String(40), nullable=True)
    manual_id_check_result: Mapped[str | None] = mapped_column(String(40), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class JobLog(Base):
    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[JobType] = mapped_column(Enum(JobType, name="job_type"), nullable=False, index=True)
    run_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[JobRunStatus] = mapped_column(
        Enum(JobRunStatus, name="job_run_status"),
        nullable=False,
        default=JobRunStatus.RUNNING,
    )
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SchedulerLock(Base):
    __tablename__ = "scheduler_locks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    lock_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked_by: Mapped[str] = mapped_column(String(255), nullable=False)
