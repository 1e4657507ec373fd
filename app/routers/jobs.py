import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.container import ServiceContainer, get_container
from app.db import get_db
from app.models import JobType
from app.schemas import JobLogRead, JobRunResponse
from app.services.job_runs import recent_job_logs

router = APIRouter(prefix="/v2/jobs", tags=["jobs"])
logger = logging.getLogger("app.jobs")


@router.post("/{job}/run", response_model=JobRunResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_job(
    job: JobType,
    container: ServiceContainer = Depends(get_container),
) -> JobRunResponse:
    future = container.scheduler.run_now(job.value)
    logger.info("job_manual_trigger", extra={"job": job.value, "accepted": future is not None})
    if future is None:
        return JobRunResponse(job=job, accepted=False, reason="already_running_or_stopping")
    return JobRunResponse(job=job, accepted=True)


@router.get("/logs", response_model=list[JobLogRead])
def list_job_logs(
    job_type: JobType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[JobLogRead]:
    return [JobLogRead.model_validate(item) for item in recent_job_logs(db, job_type=job_type, limit=limit)]
