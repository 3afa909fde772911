"""User-initiated retry of a single failed pipeline step."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from sqlalchemy import update

from ..core.database import Database
from ..core.errors import Forbidden, InvalidState, NotFound
from ..db.models import DbJob, DbJobStep
from .checkpoints import CHECKPOINT_THRESHOLD_STEP
from .job_types import PIPELINE_STEPS, STEP_PROGRESS, JobStatus, StepState
from .jobs import JobStore

logger = logging.getLogger(__name__)

RETRIABLE_STEPS: tuple[JobStatus, ...] = (
    JobStatus.IMAGE_GEN,
    JobStatus.TIMELINE_BUILD,
    JobStatus.RENDERING,
    JobStatus.PACKAGING,
)


@dataclass(frozen=True)
class RetryResult:
    success: bool
    message: str
    step_name: JobStatus
    new_status: JobStatus
    checkpoint_preserved: bool = True


def can_retry_step(step: JobStatus | str) -> bool:
    try:
        return JobStatus(step) in RETRIABLE_STEPS
    except ValueError:
        return False


class StepRetryController:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.store = JobStore(db)

    def retry_step(self, job_id: str, step_name: JobStatus | str, user_id: str) -> RetryResult:
        """Put a FAILED job back at ``step_name`` so the worker resumes it.

        The original reservation carries over; the ledger is not touched.
        """
        now = int(time.time())
        with self.db.session() as session:
            row = session.get(DbJob, job_id)
            if row is None:
                raise NotFound("Job not found")
            if row.user_id != user_id:
                raise Forbidden("Job not found")
            if not can_retry_step(step_name):
                raise InvalidState(
                    f'Step "{step_name}" cannot be retried individually. '
                    f"Only steps from {CHECKPOINT_THRESHOLD_STEP} onwards can be retried."
                )
            step = JobStatus(step_name)
            if row.status != JobStatus.FAILED.value:
                raise InvalidState(
                    f"Job must be in FAILED status to retry a step. Current status: {row.status}"
                )
            if not row.checkpoint_state:
                raise InvalidState("No checkpoint state found. Cannot retry individual step without checkpoint.")

            fields: dict[str, object] = {"dlq_at": None, "dlq_reason": None}
            if row.dlq_at is not None:
                fields["retry_count"] = 0
            self.store.transition_in_session(
                session,
                job_id,
                JobStatus.FAILED,
                step,
                progress=STEP_PROGRESS[step],
                status_message=f"Retrying {step}",
                error_code=None,
                error_message=None,
                failed_step=None,
                finished_at=None,
                **fields,
            )
            reset_steps = [s.value for s in PIPELINE_STEPS[PIPELINE_STEPS.index(step):]]
            session.execute(
                update(DbJobStep)
                .where(DbJobStep.job_id == job_id, DbJobStep.step_name.in_(reset_steps))
                .values(
                    state=StepState.PENDING.value,
                    progress_pct=0,
                    error_message=None,
                    started_at=None,
                    finished_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.store._add_event(session, job_id, step, "Step retry requested", {"user_id": user_id})

        logger.info("Step retry initiated", extra={"data": {"job_id": job_id, "step": step.value, "user_id": user_id}})
        return RetryResult(
            success=True,
            message=f"Step retry initiated for {step}",
            step_name=step,
            new_status=step,
        )
