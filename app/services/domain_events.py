from __future__ import annotations

import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from app.logging_utils import sanitize_exception
from app.models import Checkin, Offender

logger = logging.getLogger("app.domain_events")

EVENT_PREFIX = "esupervision"


class DomainEventType(enum.Enum):
    SETUP_COMPLETED = (
        f"{EVENT_PREFIX}.setup.completed",
        "An e-Supervision offender setup was completed by practitioner",
        "setup-completed",
    )
    CHECKIN_CREATED = (
        f"{EVENT_PREFIX}.check-in.created",
        "An e-Supervision remote check-in was created",
        "checkin-created",
    )
    CHECKIN_SUBMITTED = (
        f"{EVENT_PREFIX}.check-in.received",
        "An e-Supervision remote check-in was received",
        "checkin-submitted",
    )
    CHECKIN_REVIEWED = (
        f"{EVENT_PREFIX}.check-in.reviewed",
        "An e-Supervision remote check-in was reviewed",
        "checkin-reviewed",
    )
    CHECKIN_EXPIRED = (
        f"{EVENT_PREFIX}.check-in.expired",
        "An e-Supervision remote check-in was expired",
        "checkin-expired",
    )
    # External consumers call annotating a check-in "updating" it.
    CHECKIN_UPDATED = (
        f"{EVENT_PREFIX}.check-in.updated",
        "An e-Supervision remote check-in was updated",
        "checkin-updated",
    )

    def __init__(self, event_type: str, description: str, path_segment: str):
        self.event_type = event_type
        self.description = description
        self.path_segment = path_segment

    @classmethod
    def from_path(cls, segment: str) -> DomainEventType | None:
        for item in cls:
            if item.path_segment == segment:
                return item
        return None


def build_domain_event(
    event_type: DomainEventType,
    *,
    crn: str,
    detail_url: str,
    description: str,
    occurred_at: datetime | None = None,
) -> dict[str, Any]:
    return {
        "eventType": event_type.event_type,
        "version": 1,
        "detailUrl": detail_url,
        "occurredAt": (occurred_at or datetime.now(timezone.utc)).isoformat(),
        "description": description,
        "personReference": {"identifiers": [{"type": "CRN", "value": crn}]},
    }


class DomainEventPublisher:
    def __init__(self, sns_client: Any, *, topic_arn: str | None, enabled: bool, public_base_url: str):
        self.sns_client = sns_client
        self.topic_arn = topic_arn
        self.enabled = enabled and bool(topic_arn)
        self.public_base_url = public_base_url.rstrip("/")

    def detail_url(self, event_type: DomainEventType, subject_uuid: object) -> str:
        return f"{self.public_base_url}/v2/events/{event_type.path_segment}/{subject_uuid}"

    def publish(self, event_type: DomainEventType, *, crn: str, subject_uuid: object, description: str) -> None:
        detail_url = self.detail_url(event_type, subject_uuid)
        if not self.enabled:
            logger.info(
                "domain_event_publish_disabled",
                extra={"event_type": event_type.event_type, "crn": crn, "detail_url": detail_url},
            )
            return

        event = build_domain_event(event_type, crn=crn, detail_url=detail_url, description=description)
        try:
            response = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Message=json.dumps(event),
                MessageAttributes={
                    "eventType": {"DataType": "String", "StringValue": event_type.event_type},
                },
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(
                "domain_event_publish_failed",
                extra={"event_type": event_type.event_type, "error": sanitize_exception(exc, crn)},
            )
            return

        logger.info(
            "domain_event_published",
            extra={
                "event_type": event_type.event_type,
                "crn": crn,
                "detail_url": detail_url,
                "message_id": (response or {}).get("MessageId"),
            },
        )

    def setup_completed(self, offender: Offender) -> None:
        self.publish(
            DomainEventType.SETUP_COMPLETED,
            crn=offender.crn,
            subject_uuid=offender.uuid,
            description=f"Practitioner completed setup for offender {offender.crn}",
        )

    def checkin_created(self, checkin: Checkin) -> None:
        self.publish(
            DomainEventType.CHECKIN_CREATED,
            crn=checkin.offender.crn,
            subject_uuid=checkin.uuid,
            description=f"Check-in created for {checkin.offender.crn} with due date {checkin.due_date.isoformat()}",
        )

    def checkin_submitted(self, checkin: Checkin) -> None:
        self.publish(
            DomainEventType.CHECKIN_SUBMITTED,
            crn=checkin.offender.crn,
            subject_uuid=checkin.uuid,
            description=f"Check-in submitted for {checkin.offender.crn}",
        )

    def checkin_reviewed(self, checkin: Checkin) -> None:
        self.publish(
            DomainEventType.CHECKIN_REVIEWED,
            crn=checkin.offender.crn,
            subject_uuid=checkin.uuid,
            description=f"Check-in reviewed for {checkin.offender.crn} by {checkin.reviewed_by}",
        )

    def checkin_expired(self, checkin: Checkin) -> None:
        self.publish(
            DomainEventType.CHECKIN_EXPIRED,
            crn=checkin.offender.crn,
            subject_uuid=checkin.uuid,
            description=f"Check-in expired for {checkin.offender.crn} (due date was {checkin.due_date.isoformat()})",
        )

    def checkin_updated(self, checkin: Checkin) -> None:
        self.publish(
            DomainEventType.CHECKIN_UPDATED,
            crn=checkin.offender.crn,
            subject_uuid=checkin.uuid,
            description=f"Check-in annotated for {checkin.offender.crn}",
        )
