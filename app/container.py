from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.models import JobType
from app.scheduler import JobScheduler, ScheduledJob
from app.services.case_directory import CaseDirectoryClient, build_case_directory_http_client
from app.services.checkin_creation import CheckinCreationService
from app.services.checkin_jobs import CheckinCreationWorker, CheckinExpiryWorker, CheckinReminderWorker
from app.services.checkins import CheckinService
from app.services.domain_events import DomainEventPublisher
from app.services.facial_verification import FaceComparer, build_rekognition_caller
from app.services.job_runs import JobRunner
from app.services.notification_status import NotificationStatusReconciler
from app.services.notifications import NotificationOrchestrator
from app.services.notify_gateway import NotifyGateway, build_notify_http_client
from app.services.offender_setup import OffenderSetupService
from app.services.resilience import RateLimiter, ResilientCaller, build_circuit_breaker, build_retrying
from app.services.scheduler_lock import SchedulerLockManager
from app.services.storage import ObjectStorage, build_aws_client
from app.settings import Settings, get_public_base_url

logger = logging.getLogger("app.container")


@dataclass(slots=True)
class ServiceContainer:
    settings: Settings
    session_factory: Callable[[], Session]
    case_directory: CaseDirectoryClient
    notify_gateway: NotifyGateway
    storage: ObjectStorage
    face_comparer: FaceComparer
    publisher: DomainEventPublisher
    orchestrator: NotificationOrchestrator
    creation_service: CheckinCreationService
    checkin_service: CheckinService
    setup_service: OffenderSetupService
    scheduler: JobScheduler

    @classmethod
    def build(cls, settings: Settings, session_factory: Callable[[], Session]) -> ServiceContainer:
        case_directory = CaseDirectoryClient(
            build_case_directory_http_client(settings),
            ResilientCaller(
                service="case-directory",
                breaker=build_circuit_breaker("case-directory", settings),
                retrying=build_retrying(settings),
            ),
        )
        notify_gateway = NotifyGateway(
            build_notify_http_client(settings),
            api_key=settings.notify_api_key,
            rate_limiter=RateLimiter(calls=settings.notify_rate_limit_per_minute, period_seconds=60),
            caller=ResilientCaller(
                service="notify",
                breaker=build_circuit_breaker("notify", settings),
                retrying=build_retrying(settings),
            ),
        )
        storage = ObjectStorage(
            build_aws_client("s3", settings),
            image_bucket=settings.image_upload_bucket,
            video_bucket=settings.video_upload_bucket,
        )
        face_comparer = FaceComparer(build_aws_client("rekognition", settings), build_rekognition_caller(settings))
        publisher = DomainEventPublisher(
            build_aws_client("sns", settings) if settings.domain_events_enabled else None,
            topic_arn=settings.domain_events_topic_arn,
            enabled=settings.domain_events_enabled,
            public_base_url=get_public_base_url(),
        )
        orchestrator = NotificationOrchestrator(
            session_factory=session_factory,
            case_directory=case_directory,
            gateway=notify_gateway,
            publisher=publisher,
            settings=settings,
        )
        creation_service = CheckinCreationService(session_factory=session_factory, orchestrator=orchestrator)
        checkin_service = CheckinService(
            session_factory=session_factory,
            case_directory=case_directory,
            storage=storage,
            face_comparer=face_comparer,
            orchestrator=orchestrator,
            creation_service=creation_service,
            settings=settings,
        )
        setup_service = OffenderSetupService(
            session_factory=session_factory,
            storage=storage,
            orchestrator=orchestrator,
            creation_service=creation_service,
            settings=settings,
        )

        runner = JobRunner(
            session_factory=session_factory,
            lock_manager=SchedulerLockManager(session_factory),
            settings=settings,
        )
        worker_deps = {"runner": runner, "settings": settings, "session_factory": session_factory}
        creation_worker = CheckinCreationWorker(
            **worker_deps, case_directory=case_directory, creation_service=creation_service
        )
        expiry_worker = CheckinExpiryWorker(**worker_deps, case_directory=case_directory, orchestrator=orchestrator)
        reminder_worker = CheckinReminderWorker(**worker_deps, case_directory=case_directory, orchestrator=orchestrator)
        job_status = NotificationStatusReconciler(
            job_type=JobType.JOB_NOTIFICATION_STATUS, gateway=notify_gateway, **worker_deps
        )
        generic_status = NotificationStatusReconciler(
            job_type=JobType.GENERIC_NOTIFICATION_STATUS, gateway=notify_gateway, **worker_deps
        )
        scheduler = JobScheduler(
            [
                ScheduledJob(JobType.CHECKIN_CREATION.value, settings.checkin_creation_cron, creation_worker.run),
                ScheduledJob(JobType.CHECKIN_EXPIRY.value, settings.checkin_expiry_cron, expiry_worker.run),
                ScheduledJob(JobType.CHECKIN_REMINDER.value, settings.checkin_reminder_cron, reminder_worker.run),
                ScheduledJob(JobType.JOB_NOTIFICATION_STATUS.value, settings.job_notification_status_cron, job_status.run),
                ScheduledJob(
                    JobType.GENERIC_NOTIFICATION_STATUS.value,
                    settings.generic_notification_status_cron,
                    generic_status.run,
                ),
            ],
            timezone_name=settings.checkin_timezone,
            pool_size=settings.scheduler_pool_size,
            drain_timeout_seconds=settings.scheduler_drain_timeout_seconds,
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            case_directory=case_directory,
            notify_gateway=notify_gateway,
            storage=storage,
            face_comparer=face_comparer,
            publisher=publisher,
            orchestrator=orchestrator,
            creation_service=creation_service,
            checkin_service=checkin_service,
            setup_service=setup_service,
            scheduler=scheduler,
        )

    def close(self) -> None:
        for resource in (self.case_directory, self.notify_gateway, self.face_comparer):
            try:
                resource.close()
            except Exception:
                logger.exception("container_close_failed", extra={"resource": type(resource).__name__})


_container: ServiceContainer | None = None


def set_container(container: ServiceContainer | None) -> None:
    global _container
    _container = container


def get_container() -> ServiceContainer:
    if _container is None:
        raise RuntimeError("Service container is not initialised")
    return _container
