"""Operator routes for the dead letter queue."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from ...schemas.jobs import DeadLetterJobResponse, DeadLetterListResponse, JobResponse
from ...services.jobs import Job, JobStateMachine
from ..deps import User, get_admin_user, get_state_machine
from .jobs import job_to_response

logger = logging.getLogger(__name__)

router = APIRouter()


def _dead_letter_response(job: Job) -> DeadLetterJobResponse:
    return DeadLetterJobResponse(
        **job_to_response(job).model_dump(),
        user_id=job.user_id,
        dlq_at=job.dlq_at,
        dlq_reason=job.dlq_reason,
    )


@router.get("/dlq", response_model=DeadLetterListResponse)
def list_dead_letter_jobs(
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_admin_user),
    machine: JobStateMachine = Depends(get_state_machine),
):
    jobs = machine.list_dead_letter_jobs(limit=limit)
    return DeadLetterListResponse(jobs=[_dead_letter_response(job) for job in jobs], count=len(jobs))


@router.post("/dlq/{job_id}/requeue", response_model=JobResponse)
def requeue_dead_letter_job(
    job_id: str,
    admin: User = Depends(get_admin_user),
    machine: JobStateMachine = Depends(get_state_machine),
):
    job = machine.requeue_from_dead_letter(job_id)
    logger.info("Dead letter job requeued", extra={"data": {"job_id": job_id, "admin_id": admin.id}})
    return job_to_response(job, machine.store.list_steps(job_id))
