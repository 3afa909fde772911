"""Job persistence and the pipeline state machine."""

import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import Database
from ..core.errors import Forbidden, InvalidState, NotFound
from ..db.models import DbCreditLedger, DbJob, DbJobClaim, DbJobEvent, DbJobStep
from .checkpoints import CheckpointState
from .job_types import (
    PIPELINE_STEPS,
    STEP_PROGRESS,
    TERMINAL_STATUSES,
    JobStatus,
    LedgerEntryType,
    StepState,
    next_status,
    parse_status,
    parse_step,
)
from .reservations import ReservationManager

logger = logging.getLogger(__name__)

CANCELLED_CODE = "CANCELLED"
ACTIVE_STATUSES = [s.value for s in JobStatus if s not in TERMINAL_STATUSES]


@dataclass
class Job:
    id: str
    project_id: str
    user_id: str
    status: JobStatus
    progress: int
    status_message: str | None
    cost_credits_reserved: int
    cost_credits_final: int | None
    checkpoint: CheckpointState | None
    failed_step: JobStatus | None
    error_code: str | None
    error_message: str | None
    retry_count: int
    dlq_at: int | None
    dlq_reason: str | None
    created_at: int
    updated_at: int
    started_at: int | None
    finished_at: int | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def in_dead_letter(self) -> bool:
        return self.dlq_at is not None


@dataclass
class JobStep:
    job_id: str
    step_name: JobStatus
    step_order: int
    state: StepState
    progress_pct: int
    message: str | None
    error_message: str | None
    artifacts: dict[str, Any] | None
    started_at: int | None
    finished_at: int | None


@dataclass
class JobEvent:
    id: int
    job_id: str
    stage: str
    message: str
    meta: dict[str, Any] | None
    created_at: int


def _job_from_row(row: DbJob) -> Job:
    return Job(
        id=row.id,
        project_id=row.project_id,
        user_id=row.user_id,
        status=JobStatus(row.status),
        progress=row.progress,
        status_message=row.status_message,
        cost_credits_reserved=row.cost_credits_reserved,
        cost_credits_final=row.cost_credits_final,
        checkpoint=CheckpointState.from_dict(row.checkpoint_state),
        failed_step=JobStatus(row.failed_step) if row.failed_step else None,
        error_code=row.error_code,
        error_message=row.error_message,
        retry_count=row.retry_count,
        dlq_at=row.dlq_at,
        dlq_reason=row.dlq_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


def _step_from_row(row: DbJobStep) -> JobStep:
    return JobStep(
        job_id=row.job_id,
        step_name=JobStatus(row.step_name),
        step_order=row.step_order,
        state=StepState(row.state),
        progress_pct=row.progress_pct,
        message=row.message,
        error_message=row.error_message,
        artifacts=row.artifacts,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


class JobStore:
    def __init__(self, db: Database):
        self.db = db

    def create_job(self, job_id: str, user_id: str, project_id: str) -> Job:
        """Insert a QUEUED job with one pending row per pipeline step.

        ``cost_credits_reserved`` picks up any holds already placed for the id.
        """
        now = int(time.time())
        with self.db.session() as session:
            reserved = session.scalar(
                select(func.coalesce(func.sum(DbCreditLedger.amount), 0)).where(
                    DbCreditLedger.job_id == job_id,
                    DbCreditLedger.type == LedgerEntryType.RESERVE.value,
                )
            )
            row = DbJob(
                id=job_id,
                project_id=project_id,
                user_id=user_id,
                status=JobStatus.QUEUED.value,
                progress=STEP_PROGRESS[JobStatus.QUEUED],
                status_message="Queued",
                cost_credits_reserved=-int(reserved or 0),
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            for order, step in enumerate(PIPELINE_STEPS, start=1):
                session.add(
                    DbJobStep(
                        job_id=job_id,
                        step_name=step.value,
                        step_order=order,
                        state=StepState.PENDING.value,
                        progress_pct=0,
                        updated_at=now,
                    )
                )
            self._add_event(session, job_id, JobStatus.QUEUED, "Job created", now=now)
            session.flush()
            return _job_from_row(row)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.db.session() as session:
            row = session.get(DbJob, job_id)
            return _job_from_row(row) if row else None

    def get_job_for_user(self, job_id: str, user_id: str) -> Optional[Job]:
        job = self.get_job(job_id)
        if job is None or job.user_id != user_id:
            return None
        return job

    def require_job(self, job_id: str, user_id: str | None = None) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if user_id is not None and job.user_id != user_id:
            raise Forbidden(f"Job {job_id} belongs to another user")
        return job

    def list_jobs_for_user(self, user_id: str, limit: int = 10) -> List[Job]:
        return self.list_jobs_for_user_paginated(user_id, offset=0, limit=limit)

    def list_jobs_for_user_paginated(self, user_id: str, offset: int = 0, limit: int = 10) -> List[Job]:
        """List jobs for a user with pagination support."""
        with self.db.session() as session:
            stmt = (
                select(DbJob)
                .where(DbJob.user_id == user_id)
                .order_by(DbJob.created_at.desc(), DbJob.id)
                .limit(limit)
                .offset(offset)
            )
            return [_job_from_row(row) for row in session.scalars(stmt).all()]

    def count_jobs_for_user(self, user_id: str) -> int:
        """Count total jobs for a user (for pagination)."""
        with self.db.session() as session:
            count = session.scalar(select(func.count()).select_from(DbJob).where(DbJob.user_id == user_id))
            return int(count or 0)

    def count_active_jobs_for_user(self, user_id: str) -> int:
        """Count jobs that have not reached READY or FAILED."""
        with self.db.session() as session:
            count = session.scalar(
                select(func.count())
                .select_from(DbJob)
                .where(DbJob.user_id == user_id, DbJob.status.in_(ACTIVE_STATUSES))
            )
            return int(count or 0)

    def list_steps(self, job_id: str) -> List[JobStep]:
        with self.db.session() as session:
            rows = session.scalars(
                select(DbJobStep).where(DbJobStep.job_id == job_id).order_by(DbJobStep.step_order)
            ).all()
            return [_step_from_row(row) for row in rows]

    def list_events(self, job_id: str, limit: int = 100) -> List[JobEvent]:
        with self.db.session() as session:
            rows = session.scalars(
                select(DbJobEvent)
                .where(DbJobEvent.job_id == job_id)
                .order_by(DbJobEvent.created_at, DbJobEvent.id)
                .limit(limit)
            ).all()
            return [
                JobEvent(
                    id=row.id,
                    job_id=row.job_id,
                    stage=row.stage,
                    message=row.message,
                    meta=row.meta,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    def record_event(self, job_id: str, stage: str, message: str, meta: dict[str, Any] | None = None) -> None:
        with self.db.session() as session:
            self._add_event(session, job_id, stage, message, meta)

    def delete_job(self, job_id: str) -> None:
        """Delete a job from the database."""
        with self.db.session() as session:
            session.execute(delete(DbJob).where(DbJob.id == job_id))

    # -- checkpoints ---------------------------------------------------------

    def save_checkpoint(
        self,
        job_id: str,
        completed_step: JobStatus | str,
        artifacts: dict[str, Any] | None = None,
        progress: int | None = None,
    ) -> CheckpointState:
        step = parse_step(completed_step)
        with self.db.session() as session:
            row = self._row(session, job_id)
            return self._save_checkpoint_in_session(session, row, step, artifacts, progress)

    def load_checkpoint(self, job_id: str) -> CheckpointState | None:
        with self.db.session() as session:
            row = self._row(session, job_id)
            return CheckpointState.from_dict(row.checkpoint_state)

    def clear_checkpoint(self, job_id: str) -> None:
        with self.db.session() as session:
            row = self._row(session, job_id)
            row.checkpoint_state = None
            row.updated_at = int(time.time())

    def _save_checkpoint_in_session(
        self,
        session: Session,
        row: DbJob,
        step: JobStatus,
        artifacts: dict[str, Any] | None,
        progress: int | None,
    ) -> CheckpointState:
        current = CheckpointState.from_dict(row.checkpoint_state) or CheckpointState(last_completed_step=step)
        checkpoint = current.advanced(step, artifacts, STEP_PROGRESS[step] if progress is None else progress)
        row.checkpoint_state = checkpoint.to_dict()
        row.updated_at = checkpoint.saved_at
        self._add_event(session, row.id, step, "Checkpoint saved")
        return checkpoint

    # -- transitions ---------------------------------------------------------

    def transition(self, job_id: str, expected: JobStatus | str, new: JobStatus | str, **fields: Any) -> Job:
        """Move ``job_id`` from ``expected`` to ``new`` or raise ``InvalidState``."""
        with self.db.session() as session:
            row = self.transition_in_session(session, job_id, expected, new, **fields)
            return _job_from_row(row)

    def transition_in_session(
        self,
        session: Session,
        job_id: str,
        expected: JobStatus | str,
        new: JobStatus | str,
        **fields: Any,
    ) -> DbJob:
        expected_status = parse_status(expected)
        new_status = parse_status(new)
        session.flush()
        values = {"status": new_status.value, "updated_at": int(time.time()), **fields}
        result = session.execute(
            update(DbJob)
            .where(DbJob.id == job_id, DbJob.status == expected_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise InvalidState(
                f"Job {job_id} is no longer in {expected_status}; transition to {new_status} rejected"
            )
        row = self._row(session, job_id)
        session.refresh(row)
        logger.info(
            "Job transition",
            extra={"data": {"job_id": job_id, "from": expected_status.value, "to": new_status.value}},
        )
        return row

    def _row(self, session: Session, job_id: str) -> DbJob:
        row = session.get(DbJob, job_id)
        if row is None:
            raise NotFound(f"Job {job_id} not found")
        return row

    def _step_row(self, session: Session, job_id: str, step: JobStatus) -> DbJobStep:
        row = session.scalar(
            select(DbJobStep).where(DbJobStep.job_id == job_id, DbJobStep.step_name == step.value)
        )
        if row is None:
            raise NotFound(f"Step {step} not found for job {job_id}")
        return row

    def _add_event(
        self,
        session: Session,
        job_id: str,
        stage: JobStatus | str,
        message: str,
        meta: dict[str, Any] | None = None,
        now: int | None = None,
    ) -> None:
        session.add(
            DbJobEvent(
                job_id=job_id,
                stage=str(stage),
                message=message,
                meta=meta,
                created_at=now or int(time.time()),
            )
        )


class StepOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepResult:
    step: JobStatus
    outcome: StepOutcome
    artifacts: dict[str, Any] = field(default_factory=dict)
    progress_pct: int = 100
    message: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    final_cost: int | None = None


class JobStateMachine:
    """Drives a job through its steps and settles credits at the terminal states."""

    def __init__(self, db: Database, reservations: ReservationManager | None = None) -> None:
        self.db = db
        self.store = JobStore(db)
        self.reservations = reservations or ReservationManager(db)

    def start_step(self, job_id: str, step: JobStatus | str, worker_id: str | None = None) -> Job:
        """Mark ``step`` as running, moving the job onto it if needed.

        With ``worker_id`` the caller must hold a live claim on the job,
        otherwise ``InvalidState`` is raised and nothing changes.
        """
        step = parse_step(step)
        now = int(time.time())
        with self.db.session() as session:
            row = self.store._row(session, job_id)
            if worker_id is not None:
                self._require_claim(session, job_id, worker_id, now)
            current = JobStatus(row.status)
            if current is not step:
                if current in TERMINAL_STATUSES or next_status(current) is not step:
                    raise InvalidState(f"Cannot start {step} while job is {current}")
                row = self.store.transition_in_session(session, job_id, current, step)
            row.progress = STEP_PROGRESS[step]
            row.status_message = f"Running {step}"
            row.started_at = row.started_at or now
            row.updated_at = now

            step_row = self.store._step_row(session, job_id, step)
            step_row.state = StepState.STARTED.value
            step_row.progress_pct = 0
            step_row.error_message = None
            step_row.started_at = now
            step_row.finished_at = None
            step_row.updated_at = now
            self.store._add_event(session, job_id, step, "Step started")
            return _job_from_row(row)

    def report_progress(self, job_id: str, step: JobStatus | str, pct: int, message: str | None = None) -> None:
        step = parse_step(step)
        if not 0 <= pct <= 100:
            raise ValueError("pct must be between 0 and 100")
        with self.db.session() as session:
            step_row = self.store._step_row(session, job_id, step)
            step_row.progress_pct = pct
            if message is not None:
                step_row.message = message
            step_row.updated_at = int(time.time())

    def advance(self, job_id: str, result: StepResult, worker_id: str | None = None) -> Job:
        """Persist a step's outcome and move the job on.

        Success past PACKAGING completes the job and finalizes its credits.
        Failure moves the job to FAILED and settles its credits through the
        refund policy. A ``worker_id`` whose claim has lapsed is rejected.
        """
        step = parse_step(result.step)
        outcome = StepOutcome(result.outcome)
        with self.db.session() as session:
            row = self.store._row(session, job_id)
            self.reservations.ledger.lock_user(session, row.user_id)
            if worker_id is not None:
                self._require_claim(session, job_id, worker_id, int(time.time()))
            if JobStatus(row.status) is not step:
                raise InvalidState(f"Job {job_id} is {row.status}, not {step}")
            if outcome is StepOutcome.FAILED:
                row = self._fail_in_session(
                    session,
                    row,
                    step,
                    error_code=result.error_code or "STEP_FAILED",
                    error_message=result.error_message or f"{step} failed",
                )
            else:
                row = self._complete_step_in_session(session, row, step, outcome, result)
            return _job_from_row(row)

    def cancel(self, job_id: str, user_id: str) -> Job:
        with self.db.session() as session:
            row = session.get(DbJob, job_id)
            if row is None:
                raise NotFound(f"Job {job_id} not found")
            if row.user_id != user_id:
                raise Forbidden(f"Job {job_id} belongs to another user")
            self.reservations.ledger.lock_user(session, row.user_id)
            current = JobStatus(row.status)
            if current in TERMINAL_STATUSES:
                raise InvalidState(f"Job {job_id} is already {current}")
            row = self._fail_in_session(
                session,
                row,
                current if current in PIPELINE_STEPS else None,
                error_code=CANCELLED_CODE,
                error_message="Cancelled by user",
                count_retry=False,
            )
            return _job_from_row(row)

    # -- dead letter queue ---------------------------------------------------

    def list_dead_letter_jobs(self, limit: int = 100) -> List[Job]:
        with self.db.session() as session:
            rows = session.scalars(
                select(DbJob).where(DbJob.dlq_at.is_not(None)).order_by(DbJob.dlq_at.desc()).limit(limit)
            ).all()
            return [_job_from_row(row) for row in rows]

    def requeue_from_dead_letter(self, job_id: str) -> Job:
        now = int(time.time())
        with self.db.session() as session:
            row = self.store._row(session, job_id)
            if row.dlq_at is None:
                raise InvalidState(f"Job {job_id} is not in the dead letter queue")
            row = self.store.transition_in_session(
                session,
                job_id,
                JobStatus.FAILED,
                JobStatus.QUEUED,
                progress=STEP_PROGRESS[JobStatus.QUEUED],
                status_message="Requeued from dead letter queue",
                retry_count=0,
                dlq_at=None,
                dlq_reason=None,
                failed_step=None,
                error_code=None,
                error_message=None,
                started_at=None,
                finished_at=None,
            )
            session.execute(
                update(DbJobStep)
                .where(DbJobStep.job_id == job_id)
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
            self.store._add_event(session, job_id, JobStatus.QUEUED, "Requeued from dead letter queue")
            logger.info("Job requeued from dead letter queue", extra={"data": {"job_id": job_id}})
            return _job_from_row(row)

    # -- internals -----------------------------------------------------------

    def _complete_step_in_session(
        self,
        session: Session,
        row: DbJob,
        step: JobStatus,
        outcome: StepOutcome,
        result: StepResult,
    ) -> DbJob:
        now = int(time.time())
        step_row = self.store._step_row(session, row.id, step)
        step_row.state = StepState.SUCCEEDED.value if outcome is StepOutcome.SUCCEEDED else StepState.SKIPPED.value
        step_row.progress_pct = 100
        step_row.message = result.message
        step_row.artifacts = dict(result.artifacts) if outcome is StepOutcome.SUCCEEDED else None
        step_row.finished_at = now
        step_row.updated_at = now

        artifacts = result.artifacts if outcome is StepOutcome.SUCCEEDED else None
        self.store._save_checkpoint_in_session(session, row, step, artifacts, STEP_PROGRESS[step])

        following = next_status(step)
        if following is not JobStatus.READY:
            row = self.store.transition_in_session(
                session,
                row.id,
                step,
                following,
                progress=STEP_PROGRESS[following],
                status_message=f"{step} {outcome.value}",
            )
            self.store._add_event(session, row.id, step, f"Step {outcome.value}")
            return row

        final_cost = result.final_cost if result.final_cost is not None else row.cost_credits_reserved
        self.reservations.finalize_in_session(session, row.user_id, row.id, final_cost, cap_to_balance=True)
        fields: dict[str, Any] = {
            "progress": STEP_PROGRESS[JobStatus.READY],
            "status_message": "Ready",
            "finished_at": now,
            "checkpoint_state": None,
        }
        if row.cost_credits_final is None:
            # Charge was already settled by an earlier failure.
            fields["cost_credits_final"] = self._net_charge(session, row.id)
        row = self.store.transition_in_session(session, row.id, step, JobStatus.READY, **fields)
        self.store._add_event(
            session,
            row.id,
            JobStatus.READY,
            "Job completed",
            {"cost": row.cost_credits_final, "requested_cost": final_cost},
        )
        return row

    def _fail_in_session(
        self,
        session: Session,
        row: DbJob,
        step: JobStatus | None,
        *,
        error_code: str,
        error_message: str,
        count_retry: bool = True,
    ) -> DbJob:
        now = int(time.time())
        if step is not None:
            step_row = self.store._step_row(session, row.id, step)
            step_row.state = StepState.FAILED.value
            step_row.error_message = error_message
            step_row.finished_at = now
            step_row.updated_at = now

        retry_count = row.retry_count + 1 if count_retry else row.retry_count
        fields: dict[str, Any] = {
            "failed_step": step.value if step is not None else None,
            "error_code": error_code,
            "error_message": error_message,
            "status_message": error_message,
            "finished_at": now,
            "retry_count": retry_count,
        }
        if count_retry and retry_count >= settings.max_retry_count and row.dlq_at is None:
            fields["dlq_at"] = now
            fields["dlq_reason"] = f"Failed {retry_count} times; last error {error_code}: {error_message}"

        row = self.store.transition_in_session(session, row.id, row.status, JobStatus.FAILED, **fields)
        self.store._add_event(
            session,
            row.id,
            JobStatus.FAILED,
            error_message,
            {"error_code": error_code, "failed_step": fields["failed_step"], "retry_count": retry_count},
        )
        if "dlq_at" in fields:
            logger.warning(
                "Job moved to dead letter queue",
                extra={"data": {"job_id": row.id, "retry_count": retry_count}},
            )
        self.reservations.settle_in_session(session, row)
        return row

    def _require_claim(self, session: Session, job_id: str, worker_id: str, now: int) -> None:
        claim = session.get(DbJobClaim, job_id)
        if claim is None or claim.worker_id != worker_id or claim.lease_expires_at <= now:
            raise InvalidState(f"Worker {worker_id} does not hold the claim on job {job_id}")

    def _net_charge(self, session: Session, job_id: str) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(DbCreditLedger.amount), 0)).where(DbCreditLedger.job_id == job_id)
        )
        return max(0, -int(total or 0))
