"""Initial remote check-in schema

Revision ID: 0001_initial
Revises:
Create Date: 2025-06-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

offender_status = postgresql.ENUM(
    "INITIAL",
    "VERIFIED",
    "INACTIVE",
    name="offender_status",
    create_type=False,
)
contact_preference = postgresql.ENUM(
    "PHONE",
    "EMAIL",
    name="contact_preference",
    create_type=False,
)
checkin_status = postgresql.ENUM(
    "CREATED",
    "SUBMITTED",
    "REVIEWED",
    "EXPIRED",
    name="checkin_status",
    create_type=False,
)
automated_id_verification_result = postgresql.ENUM(
    "MATCH",
    "NO_MATCH",
    "NO_FACE_DETECTED",
    "ERROR",
    name="automated_id_verification_result",
    create_type=False,
)
manual_id_verification_result = postgresql.ENUM(
    "MATCH",
    "NO_MATCH",
    name="manual_id_verification_result",
    create_type=False,
)
checkin_phase = postgresql.ENUM(
    "STARTED",
    "SUBMITTED",
    "REVIEW_STARTED",
    "REVIEWED",
    "EXPIRED",
    name="checkin_phase",
    create_type=False,
)
log_entry_type = postgresql.ENUM(
    "setup-complete",
    "deactivated",
    "reactivated",
    "reviewed-after-submission",
    "reviewed-after-expiry",
    "annotated",
    name="log_entry_type",
    create_type=False,
)
job_type = postgresql.ENUM(
    "CHECKIN_CREATION",
    "CHECKIN_EXPIRY",
    "CHECKIN_REMINDER",
    "JOB_NOTIFICATION_STATUS",
    "GENERIC_NOTIFICATION_STATUS",
    name="job_type",
    create_type=False,
)
job_run_status = postgresql.ENUM(
    "RUNNING",
    "COMPLETED",
    "FAILED",
    "SKIPPED",
    name="job_run_status",
    create_type=False,
)

ALL_ENUMS = (
    offender_status,
    contact_preference,
    checkin_status,
    automated_id_verification_result,
    manual_id_verification_result,
    checkin_phase,
    log_entry_type,
    job_type,
    job_run_status,
)


def _created_at(index: bool = False) -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
        index=index,
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "offenders",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("uuid", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("crn", sa.String(length=7), nullable=False),
        sa.Column("practitioner_id", sa.String(length=255), nullable=False),
        sa.Column("status", offender_status, nullable=False, server_default=sa.text("'INITIAL'")),
        sa.Column("first_checkin", sa.Date(), nullable=False),
        sa.Column("checkin_interval_days", sa.Integer(), nullable=False),
        sa.Column("contact_preference", contact_preference, nullable=False, server_default=sa.text("'PHONE'")),
        _created_at(),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("uuid", name="uq_offenders_uuid"),
        sa.UniqueConstraint("crn", name="uq_offenders_crn"),
        sa.CheckConstraint("checkin_interval_days IN (7, 14, 28, 56)", name="ck_offenders_checkin_interval_days"),
    )
    op.create_index("ix_offenders_practitioner_id", "offenders", ["practitioner_id"])
    op.create_index("ix_offenders_status", "offenders", ["status"])

    op.create_table(
        "offender_setups",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("uuid", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("offender_id", sa.Integer(), nullable=False),
        sa.Column("practitioner_id", sa.String(length=255), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["offender_id"], ["offenders.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("uuid", name="uq_offender_setups_uuid"),
        sa.UniqueConstraint("offender_id", name="uq_offender_setups_offender_id"),
    )

    op.create_table(
        "job_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_type", job_type, nullable=False),
        sa.Column("run_date", sa.Date(), nullable=False),
        sa.Column("status", job_run_status, nullable=False, server_default=sa.text("'RUNNING'")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _created_at(),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_job_logs_job_type_run_date", "job_logs", ["job_type", "run_date"])
    op.create_index("ix_job_logs_created_at", "job_logs", ["created_at"])

    op.create_table(
        "checkins",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("uuid", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("offender_id", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", checkin_status, nullable=False, server_default=sa.text("'CREATED'")),
        sa.Column("survey_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("auto_id_check", automated_id_verification_result, nullable=True),
        sa.Column("manual_id_check", manual_id_verification_result, nullable=True),
        sa.Column("risk_feedback", sa.Boolean(), nullable=True),
        _created_at(),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(["offender_id"], ["offenders.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("uuid", name="uq_checkins_uuid"),
        sa.UniqueConstraint("offender_id", "due_date", name="uq_checkins_offender_due_date"),
    )
    op.create_index("ix_checkins_offender_id", "checkins", ["offender_id"])
    op.create_index("ix_checkins_status_due_date", "checkins", ["status", "due_date"])
    op.create_index("ix_checkins_due_date", "checkins", ["due_date"])

    op.create_table(
        "checkin_phase_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("checkin_id", sa.Integer(), nullable=False),
        sa.Column("phase", checkin_phase, nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["checkin_id"], ["checkins.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_checkin_phase_events_checkin_id", "checkin_phase_events", ["checkin_id"])
    op.create_index(
        "uq_checkin_phase_events_started_once",
        "checkin_phase_events",
        ["checkin_id", "phase"],
        unique=True,
        postgresql_where=sa.text("phase = 'STARTED'"),
    )

    op.create_table(
        "offender_event_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("uuid", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("offender_id", sa.Integer(), nullable=False),
        sa.Column("checkin_id", sa.Integer(), nullable=True),
        sa.Column("log_entry_type", log_entry_type, nullable=False),
        sa.Column("comment", sa.Text(), nullable=False),
        sa.Column("practitioner", sa.String(length=255), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["offender_id"], ["offenders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["checkin_id"], ["checkins.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("uuid", name="uq_offender_event_logs_uuid"),
    )
    op.create_index("ix_offender_event_logs_offender_id", "offender_event_logs", ["offender_id"])
    op.create_index("ix_offender_event_logs_checkin_id", "offender_event_logs", ["checkin_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("notification_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("recipient_type", sa.String(length=20), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("offender_id", sa.Integer(), nullable=True),
        sa.Column("practitioner_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False, server_default=sa.text("'created'")),
        sa.Column("reference", sa.String(length=255), nullable=False),
        sa.Column("template_id", sa.String(length=255), nullable=True),
        sa.Column("job_log_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["offender_id"], ["offenders.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["job_log_id"], ["job_logs.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("notification_id", name="uq_notifications_notification_id"),
    )
    op.create_index("ix_notifications_status_created_at", "notifications", ["status", "created_at"])
    op.create_index("ix_notifications_reference", "notifications", ["reference"])
    op.create_index("ix_notifications_job_log_id", "notifications", ["job_log_id"])
    op.create_index("ix_notifications_offender_event", "notifications", ["offender_id", "event_type", "created_at"])

    op.create_table(
        "event_audits",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("crn", sa.String(length=7), nullable=False),
        sa.Column("practitioner_id", sa.String(length=255), nullable=False),
        sa.Column("local_admin_unit_code", sa.String(length=100), nullable=True),
        sa.Column("local_admin_unit_description", sa.String(length=255), nullable=True),
        sa.Column("pdu_code", sa.String(length=100), nullable=True),
        sa.Column("pdu_description", sa.String(length=255), nullable=True),
        sa.Column("provider_code", sa.String(length=100), nullable=True),
        sa.Column("provider_description", sa.String(length=255), nullable=True),
        sa.Column("checkin_uuid", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("checkin_status", sa.String(length=20), nullable=True),
        sa.Column("checkin_due_date", sa.Date(), nullable=True),
        sa.Column("time_to_submit_hours", sa.Numeric(10, 2), nullable=True),
        sa.Column("time_to_review_hours", sa.Numeric(10, 2), nullable=True),
        sa.Column("review_duration_hours", sa.Numeric(10, 2), nullable=True),
        sa.Column("auto_id_check_result", sa.String(length=40), nullable=True),
        sa.Column("manual_id_check_result", sa.String(length=40), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_event_audits_event_type_occurred_at", "event_audits", ["event_type", "occurred_at"])
    op.create_index("ix_event_audits_crn", "event_audits", ["crn"])
    op.create_index("ix_event_audits_checkin_uuid", "event_audits", ["checkin_uuid"])

    op.create_table(
        "scheduler_locks",
        sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("lock_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(length=255), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_event_audits_checkin_uuid", table_name="event_audits")
    op.drop_index("ix_event_audits_crn", table_name="event_audits")
    op.drop_index("ix_event_audits_event_type_occurred_at", table_name="event_audits")
    op.drop_table("event_audits")
    op.drop_index("ix_notifications_offender_event", table_name="notifications")
    op.drop_index("ix_notifications_job_log_id", table_name="notifications")
    op.drop_index("ix_notifications_reference", table_name="notifications")
    op.drop_index("ix_notifications_status_created_at", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_offender_event_logs_checkin_id", table_name="offender_event_logs")
    op.drop_index("ix_offender_event_logs_offender_id", table_name="offender_event_logs")
    op.drop_table("offender_event_logs")
    op.drop_index("uq_checkin_phase_events_started_once", table_name="checkin_phase_events")
    op.drop_index("ix_checkin_phase_events_checkin_id", table_name="checkin_phase_events")
    op.drop_table("checkin_phase_events")
    op.drop_index("ix_checkins_due_date", table_name="checkins")
    op.drop_index("ix_checkins_status_due_date", table_name="checkins")
    op.drop_index("ix_checkins_offender_id", table_name="checkins")
    op.drop_table("checkins")
    op.drop_index("ix_job_logs_created_at", table_name="job_logs")
    op.drop_index("ix_job_logs_job_type_run_date", table_name="job_logs")
    op.drop_table("job_logs")
    op.drop_table("offender_setups")
    op.drop_index("ix_offenders_status", table_name="offenders")
    op.drop_index("ix_offenders_practitioner_id", table_name="offenders")
    op.drop_table("offenders")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
