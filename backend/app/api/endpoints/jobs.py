"""Job creation, status, retry and cancellation routes."""

from __future__ import annotations

import logging
import math
import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...core.config import settings
from ...core.errors import Forbidden, NotFound
from ...schemas.jobs import (
    CheckpointResponse,
    CreateJobRequest,
    JobEventResponse,
    JobResponse,
    JobStepResponse,
    PaginatedJobsResponse,
    RetryOptionsResponse,
    RetryStepRequest,
    RetryStepResponse,
)
from ...services.checkpoints import retry_options
from ...services.jobs import Job, JobStateMachine, JobStep, JobStore
from ...services.ledger import LedgerStore
from ...services.reservations import ReservationManager
from ...services.step_retry import StepRetryController
from ..deps import (
    User,
    get_current_user,
    get_job_store,
    get_ledger_store,
    get_reservation_manager,
    get_state_machine,
    get_step_retry_controller,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def job_to_response(job: Job, steps: List[JobStep] | None = None, balance: int | None = None) -> JobResponse:
    checkpoint = None
    if job.checkpoint is not None:
        checkpoint = CheckpointResponse(
            last_completed_step=job.checkpoint.last_completed_step.value,
            artifacts=job.checkpoint.artifacts,
            saved_at=job.checkpoint.saved_at,
            progress=job.checkpoint.progress,
        )
    return JobResponse(
        id=job.id,
        project_id=job.project_id,
        status=job.status.value,
        progress=job.progress,
        status_message=job.status_message,
        cost_credits_reserved=job.cost_credits_reserved,
        cost_credits_final=job.cost_credits_final,
        failed_step=job.failed_step.value if job.failed_step else None,
        error_code=job.error_code,
        error_message=job.error_message,
        retry_count=job.retry_count,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        checkpoint=checkpoint,
        steps=[
            JobStepResponse(
                step_name=step.step_name.value,
                step_order=step.step_order,
                state=step.state.value,
                progress_pct=step.progress_pct,
                message=step.message,
                error_message=step.error_message,
                started_at=step.started_at,
                finished_at=step.finished_at,
            )
            for step in steps or []
        ],
        balance=balance,
    )


def _owned_job(job_store: JobStore, job_id: str, user: User) -> Job:
    job = job_store.get_job_for_user(job_id, user.id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_job(
    request: CreateJobRequest,
    current_user: User = Depends(get_current_user),
    job_store: JobStore = Depends(get_job_store),
    reservations: ReservationManager = Depends(get_reservation_manager),
):
    """Reserve credits up front, then create the job row."""
    if job_store.count_active_jobs_for_user(current_user.id) >= settings.max_concurrent_jobs:
        raise HTTPException(status_code=429, detail="Too many active jobs. Please wait for one to finish.")

    job_id = uuid.uuid4().hex
    balance = reservations.reserve_credits(current_user.id, job_id, request.credits)
    try:
        job = job_store.create_job(job_id, current_user.id, request.project_id)
    except Exception:
        logger.exception("Job creation failed after reservation", extra={"data": {"job_id": job_id}})
        reservations.release_reserved_credits(job_id, user_id=current_user.id, note="Refund - job creation failed")
        raise HTTPException(status_code=500, detail="Failed to create job")

    logger.info(
        "Job created",
        extra={"data": {"job_id": job_id, "user_id": current_user.id, "credits": request.credits}},
    )
    return job_to_response(job, job_store.list_steps(job_id), balance=balance)


@router.get("", response_model=List[JobResponse])
def list_jobs(
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    job_store: JobStore = Depends(get_job_store),
):
    """List the caller's most recent jobs."""
    return [job_to_response(job) for job in job_store.list_jobs_for_user(current_user.id, limit=limit)]


@router.get("/paginated", response_model=PaginatedJobsResponse)
def list_jobs_paginated(
    page: int = Query(1, ge=1),
    page_size: int = Query(5, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    job_store: JobStore = Depends(get_job_store),
):
    total = job_store.count_jobs_for_user(current_user.id)
    offset = (page - 1) * page_size
    jobs = job_store.list_jobs_for_user_paginated(current_user.id, offset=offset, limit=page_size)
    return PaginatedJobsResponse(
        items=[job_to_response(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    current_user: User = Depends(get_current_user),
    job_store: JobStore = Depends(get_job_store),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    job = _owned_job(job_store, job_id, current_user)
    return job_to_response(job, job_store.list_steps(job_id), balance=ledger.get_balance(current_user.id))


@router.get("/{job_id}/events", response_model=List[JobEventResponse])
def list_job_events(
    job_id: str,
    current_user: User = Depends(get_current_user),
    job_store: JobStore = Depends(get_job_store),
):
    _owned_job(job_store, job_id, current_user)
    return [
        JobEventResponse(stage=event.stage, message=event.message, meta=event.meta, created_at=event.created_at)
        for event in job_store.list_events(job_id)
    ]


@router.get("/{job_id}/retry-options", response_model=RetryOptionsResponse)
def get_retry_options(
    job_id: str,
    current_user: User = Depends(get_current_user),
    job_store: JobStore = Depends(get_job_store),
):
    job = _owned_job(job_store, job_id, current_user)
    options = retry_options(job.checkpoint)
    return RetryOptionsResponse(
        can_retry_from_checkpoint=options.can_retry_from_checkpoint,
        next_step=options.next_step.value if options.next_step else None,
        message=options.message,
    )


@router.post("/{job_id}/retry-step", response_model=RetryStepResponse)
def retry_step(
    job_id: str,
    request: RetryStepRequest,
    current_user: User = Depends(get_current_user),
    controller: StepRetryController = Depends(get_step_retry_controller),
):
    """Resume a FAILED job at one step, reusing its original reservation."""
    try:
        result = controller.retry_step(job_id, request.step_name, current_user.id)
    except Forbidden as exc:
        # Someone else's job is indistinguishable from a missing one.
        raise NotFound("Job not found") from exc
    return RetryStepResponse(
        success=result.success,
        message=result.message,
        step_name=result.step_name.value,
        new_status=result.new_status.value,
        checkpoint_preserved=result.checkpoint_preserved,
    )


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: str,
    current_user: User = Depends(get_current_user),
    machine: JobStateMachine = Depends(get_state_machine),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    try:
        job = machine.cancel(job_id, current_user.id)
    except Forbidden as exc:
        raise NotFound("Job not found") from exc
    return job_to_response(job, machine.store.list_steps(job_id), balance=ledger.get_balance(current_user.id))
