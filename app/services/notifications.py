from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.audit import (
    audit_checkin_created,
    audit_checkin_reviewed,
    audit_checkin_submitted,
    audit_checkins_expired,
    audit_checkins_reminded,
    audit_setup_completed,
)
from app.errors import UpstreamUnavailable
from app.logging_utils import sanitize_exception, sanitize_message
from app.models import (
    AutomatedIdVerificationResult,
    Checkin,
    Notification,
    NotificationChannelType,
    NotificationEventType,
    Offender,
    RecipientType,
)
from app.services.case_directory import CaseDirectoryClient, ContactDetails
from app.services.domain_events import DomainEventPublisher
from app.services.notify_gateway import EmailRecipient, NotifyGateway, Recipient, SmsRecipient
from app.services.schedule import final_submission_date, format_notification_date
from app.services.survey import flagged_survey_responses
from app.settings import Settings, checkin_review_url, checkin_submit_url, notification_template_id

logger = logging.getLogger("app.notifications")

CONTACT_REQUEST_TEXT = "This person has requested contact before their next appointment."
AUTO_ID_FAILED_TEXT = (
    "You need to review this check in to make sure the video shows the person who should be checking in."
)
STATUS_CREATED = "created"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class NotificationTask:
    event_type: NotificationEventType
    recipient_type: RecipientType
    channel: NotificationChannelType
    recipient: Recipient
    template_id: str
    reference: str
    offender_id: int | None
    practitioner_id: str | None
    crn: str | None = None


@dataclass(slots=True)
class DispatchSummary:
    created: int = 0
    sent: int = 0
    failed: int = 0
    undeliverable: int = 0

    def add(self, other: DispatchSummary) -> None:
        self.created += other.created
        self.sent += other.sent
        self.failed += other.failed
        self.undeliverable += other.undeliverable

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "sent": self.sent,
            "failed": self.failed,
            "undeliverable": self.undeliverable,
        }


def persist_notification_tasks(
    session: Session,
    tasks: list[NotificationTask],
    *,
    job_log_id: int | None = None,
) -> list[int]:
    now_utc = datetime.now(timezone.utc)
    records = [
        Notification(
            notification_id=uuid.uuid4(),
            event_type=task.event_type.value,
            recipient_type=task.recipient_type.value,
            channel=task.channel.value,
            offender_id=task.offender_id,
            practitioner_id=task.practitioner_id,
            status=STATUS_CREATED,
            reference=task.reference,
            template_id=task.template_id,
            job_log_id=job_log_id,
            created_at=now_utc,
        )
        for task in tasks
    ]
    session.add_all(records)
    session.flush()
    return [record.id for record in records]


def mark_notification_sent(session: Session, record_id: int, provider_id: uuid.UUID) -> Notification | None:
    record = session.get(Notification, record_id)
    if record is None:
        return None
    now_utc = datetime.now(timezone.utc)
    record.notification_id = provider_id
    record.status = STATUS_SENT
    record.sent_at = now_utc
    record.updated_at = now_utc
    record.error_message = None
    return record


def mark_notification_failed(session: Session, record_id: int, error: str) -> Notification | None:
    record = session.get(Notification, record_id)
    if record is None:
        return None
    record.status = STATUS_FAILED
    record.sent_at = None
    record.updated_at = datetime.now(timezone.utc)
    record.error_message = error[:4000]
    return record


def submitted_flag_count(checkin: Checkin) -> int:
    flags = len(flagged_survey_responses(checkin.survey_response))
    if checkin.auto_id_check != AutomatedIdVerificationResult.MATCH:
        flags += 1
    return flags


class NotificationOrchestrator:
    """Publishes the domain event, records the audit fact and sends the notifications for one event.

    Failures past the domain event are logged and counted, never raised to the caller.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        case_directory: CaseDirectoryClient,
        gateway: NotifyGateway,
        publisher: DomainEventPublisher,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.case_directory = case_directory
        self.gateway = gateway
        self.publisher = publisher
        self.settings = settings

    def _resolve_contact_details(
        self,
        crn: str,
        contact_details: ContactDetails | None,
    ) -> ContactDetails | None:
        if contact_details is not None:
            return contact_details
        try:
            return self.case_directory.get_contact_details(crn)
        except UpstreamUnavailable as exc:
            logger.warning(
                "notification_contact_lookup_failed",
                extra={"crn": crn, "error": sanitize_exception(exc, crn)},
            )
            return None

    def _audit(self, writer: Callable[..., int], *args: Any, **kwargs: Any) -> None:
        with self.session_factory() as session:
            writer(session, *args, **kwargs)

    def _undeliverable(
        self,
        event_type: NotificationEventType,
        recipient_type: RecipientType,
        channel: NotificationChannelType,
        *,
        crn: str,
        reason: str,
    ) -> None:
        logger.warning(
            "notification_undeliverable",
            extra={
                "event_type": event_type.value,
                "recipient_type": recipient_type.value,
                "channel": channel.value,
                "crn": crn,
                "reason": reason,
            },
        )

    def build_offender_tasks(
        self,
        event_type: NotificationEventType,
        offender: Offender,
        contact_details: ContactDetails | None,
        summary: DispatchSummary,
    ) -> list[NotificationTask]:
        tasks: list[NotificationTask] = []
        channels = (
            (NotificationChannelType.SMS, self.settings.notify_offender_sms_enabled),
            (NotificationChannelType.EMAIL, self.settings.notify_offender_email_enabled),
        )
        for channel, enabled in channels:
            template_id = notification_template_id(self.settings, event_type.value, RecipientType.OFFENDER.value, channel.value)
            if not enabled or not template_id:
                continue
            if contact_details is None:
                summary.undeliverable += 1
                self._undeliverable(event_type, RecipientType.OFFENDER, channel, crn=offender.crn, reason="contact_details_missing")
                continue
            recipient: Recipient | None = None
            if channel == NotificationChannelType.SMS and contact_details.mobile:
                recipient = SmsRecipient(contact_details.mobile)
            elif channel == NotificationChannelType.EMAIL and contact_details.email:
                recipient = EmailRecipient(contact_details.email)
            if recipient is None:
                summary.undeliverable += 1
                self._undeliverable(event_type, RecipientType.OFFENDER, channel, crn=offender.crn, reason="recipient_missing")
                continue
            tasks.append(
                NotificationTask(
                    event_type=event_type,
                    recipient_type=RecipientType.OFFENDER,
                    channel=channel,
                    recipient=recipient,
                    template_id=template_id,
                    reference=str(offender.uuid),
                    offender_id=offender.id,
                    practitioner_id=None,
                    crn=offender.crn,
                )
            )
        return tasks

    def build_practitioner_tasks(
        self,
        event_type: NotificationEventType,
        checkin: Checkin,
        contact_details: ContactDetails | None,
        summary: DispatchSummary,
    ) -> list[NotificationTask]:
        offender = checkin.offender
        channel = NotificationChannelType.EMAIL
        template_id = notification_template_id(self.settings, event_type.value, RecipientType.PRACTITIONER.value, channel.value)
        if not self.settings.notify_practitioner_email_enabled or not template_id:
            return []
        practitioner = contact_details.practitioner if contact_details else None
        if practitioner is None or not practitioner.email:
            summary.undeliverable += 1
            self._undeliverable(
                event_type,
                RecipientType.PRACTITIONER,
                channel,
                crn=offender.crn,
                reason="contact_details_missing" if contact_details is None else "recipient_missing",
            )
            return []
        return [
            NotificationTask(
                event_type=event_type,
                recipient_type=RecipientType.PRACTITIONER,
                channel=channel,
                recipient=EmailRecipient(practitioner.email),
                template_id=template_id,
                reference=str(checkin.uuid),
                offender_id=offender.id,
                practitioner_id=offender.practitioner_id,
                crn=offender.crn,
            )
        ]

    def dispatch(
        self,
        tasks: list[NotificationTask],
        personalisation: dict[str, str],
        *,
        job_log_id: int | None = None,
        summary: DispatchSummary | None = None,
    ) -> DispatchSummary:
        summary = summary or DispatchSummary()
        if not tasks:
            return summary

        with self.session_factory() as session, session.begin():
            record_ids = persist_notification_tasks(session, tasks, job_log_id=job_log_id)
        summary.created += len(record_ids)

        for task, record_id in zip(tasks, record_ids):
            try:
                provider_id = self.gateway.send(task.recipient, task.template_id, personalisation, task.reference)
            except Exception as exc:
                error = sanitize_exception(exc)
                logger.warning(
                    "notification_send_failed",
                    extra={
                        "event_type": task.event_type.value,
                        "recipient_type": task.recipient_type.value,
                        "channel": task.channel.value,
                        "record_id": record_id,
                        "error": sanitize_message(error, task.crn),
                    },
                )
                self._record_outcome(task, record_id, mark_notification_failed, error)
                summary.failed += 1
                continue

            # The provider accepted the message, so it counts as sent even if the record update fails.
            self._record_outcome(task, record_id, mark_notification_sent, provider_id)
            summary.sent += 1
            logger.info(
                "notification_sent",
                extra={
                    "event_type": task.event_type.value,
                    "recipient_type": task.recipient_type.value,
                    "channel": task.channel.value,
                    "record_id": record_id,
                    "crn": task.crn,
                    "notification_id": str(provider_id),
                },
            )
        return summary

    def _record_outcome(
        self,
        task: NotificationTask,
        record_id: int,
        update: Callable[..., Any],
        *args: Any,
    ) -> None:
        try:
            with self.session_factory() as session, session.begin():
                update(session, record_id, *args)
        except SQLAlchemyError as exc:
            logger.error(
                "notification_status_update_failed",
                extra={
                    "event_type": task.event_type.value,
                    "channel": task.channel.value,
                    "record_id": record_id,
                    "error": sanitize_exception(exc, task.crn),
                },
            )

    def _safe_dispatch(
        self,
        tasks: list[NotificationTask],
        personalisation: dict[str, str],
        summary: DispatchSummary,
        *,
        crn: str,
        subject_uuid: object,
        job_log_id: int | None = None,
    ) -> DispatchSummary:
        settled_before = summary.sent + summary.failed
        try:
            return self.dispatch(tasks, personalisation, job_log_id=job_log_id, summary=summary)
        except Exception as exc:
            logger.error(
                "notification_dispatch_failed",
                extra={"error": sanitize_exception(exc, crn, subject_uuid)},
            )
            settled = summary.sent + summary.failed - settled_before
            summary.failed += max(0, len(tasks) - settled)
            return summary

    def notify_setup_completed(
        self,
        offender: Offender,
        contact_details: ContactDetails | None = None,
    ) -> DispatchSummary:
        self.publisher.setup_completed(offender)
        details = self._resolve_contact_details(offender.crn, contact_details)
        self._audit(audit_setup_completed, offender, details)

        summary = DispatchSummary()
        tasks = self.build_offender_tasks(NotificationEventType.SETUP_COMPLETED, offender, details, summary)
        if details is None:
            return summary
        personalisation = {
            "name": details.name.full_name,
            "date": format_notification_date(offender.first_checkin),
            "frequency": offender.checkin_interval.frequency_label,
        }
        return self._safe_dispatch(tasks, personalisation, summary, crn=offender.crn, subject_uuid=offender.uuid)

    def notify_checkin_created(
        self,
        checkin: Checkin,
        contact_details: ContactDetails | None = None,
        *,
        job_log_id: int | None = None,
        audit_note: str | None = "Created by scheduled job",
    ) -> DispatchSummary:
        offender = checkin.offender
        self.publisher.checkin_created(checkin)
        details = self._resolve_contact_details(offender.crn, contact_details)
        self._audit(audit_checkin_created, checkin, details, notes=audit_note)

        summary = DispatchSummary()
        tasks = self.build_offender_tasks(NotificationEventType.CHECKIN_CREATED, offender, details, summary)
        if details is None:
            return summary
        final_date = final_submission_date(checkin.due_date, self.settings.checkin_grace_period_days)
        personalisation = {
            "firstName": details.name.forename,
            "lastName": details.name.surname,
            "date": format_notification_date(final_date),
            "url": checkin_submit_url(self.settings, checkin.uuid),
        }
        return self._safe_dispatch(
            tasks,
            personalisation,
            summary,
            crn=offender.crn,
            subject_uuid=checkin.uuid,
            job_log_id=job_log_id,
        )

    def notify_checkin_submitted(
        self,
        checkin: Checkin,
        contact_details: ContactDetails | None = None,
    ) -> DispatchSummary:
        offender = checkin.offender
        self.publisher.checkin_submitted(checkin)
        details = self._resolve_contact_details(offender.crn, contact_details)
        self._audit(audit_checkin_submitted, checkin, details)

        summary = DispatchSummary()
        event_type = NotificationEventType.CHECKIN_SUBMITTED
        tasks = self.build_offender_tasks(event_type, offender, details, summary)
        tasks.extend(self.build_practitioner_tasks(event_type, checkin, details, summary))
        if details is None:
            return summary

        flagged = flagged_survey_responses(checkin.survey_response)
        auto_id_failed = checkin.auto_id_check != AutomatedIdVerificationResult.MATCH
        personalisation = {
            "name": details.name.full_name,
            "practitionerName": offender.practitioner_id,
            "number": str(submitted_flag_count(checkin)),
            "contactRequest": CONTACT_REQUEST_TEXT if "callback" in flagged else "",
            "autoIdFailed": AUTO_ID_FAILED_TEXT if auto_id_failed else "",
            "dashboardSubmissionUrl": checkin_review_url(self.settings, checkin.uuid, offender.crn),
        }
        return self._safe_dispatch(tasks, personalisation, summary, crn=offender.crn, subject_uuid=checkin.uuid)

    def notify_checkin_reviewed(
        self,
        checkin: Checkin,
        contact_details: ContactDetails | None = None,
    ) -> DispatchSummary:
        self.publisher.checkin_reviewed(checkin)
        details = self._resolve_contact_details(checkin.offender.crn, contact_details)
        self._audit(audit_checkin_reviewed, checkin, details)
        return DispatchSummary()

    def notify_checkin_updated(self, checkin: Checkin) -> DispatchSummary:
        self.publisher.checkin_updated(checkin)
        return DispatchSummary()

    def notify_checkins_expired(
        self,
        items: Iterable[tuple[Checkin, ContactDetails | None]],
        *,
        job_log_id: int | None = None,
    ) -> DispatchSummary:
        """Practitioner-only notifications for expired check-ins; audits are recorded for every item."""
        total = DispatchSummary()
        audited: list[tuple[Checkin, ContactDetails | None]] = []
        for checkin, details in items:
            audited.append((checkin, details))
            offender = checkin.offender
            summary = DispatchSummary()
            tasks = self.build_practitioner_tasks(NotificationEventType.CHECKIN_EXPIRED, checkin, details, summary)
            if details is not None:
                personalisation = {
                    "practitionerName": offender.practitioner_id,
                    "name": details.name.full_name,
                    "popDashboardUrl": checkin_review_url(self.settings, checkin.uuid, offender.crn),
                }
                self._safe_dispatch(
                    tasks,
                    personalisation,
                    summary,
                    crn=offender.crn,
                    subject_uuid=checkin.uuid,
                    job_log_id=job_log_id,
                )
            total.add(summary)
            self.publisher.checkin_expired(checkin)
        self._audit(audit_checkins_expired, audited)
        return total

    def notify_checkin_reminders(
        self,
        items: Iterable[tuple[Checkin, ContactDetails | None]],
        *,
        job_log_id: int | None = None,
    ) -> DispatchSummary:
        total = DispatchSummary()
        audited: list[tuple[Checkin, ContactDetails | None]] = []
        for checkin, details in items:
            audited.append((checkin, details))
            offender = checkin.offender
            summary = DispatchSummary()
            tasks = self.build_offender_tasks(NotificationEventType.CHECKIN_REMINDER, offender, details, summary)
            if details is not None:
                final_date = final_submission_date(checkin.due_date, self.settings.checkin_grace_period_days)
                personalisation = {
                    "firstName": details.name.forename,
                    "lastName": details.name.surname,
                    "date": format_notification_date(final_date),
                    "url": checkin_submit_url(self.settings, checkin.uuid),
                }
                self._safe_dispatch(
                    tasks,
                    personalisation,
                    summary,
                    crn=offender.crn,
                    subject_uuid=checkin.uuid,
                    job_log_id=job_log_id,
                )
            total.add(summary)
        self._audit(audit_checkins_reminded, audited)
        return total
