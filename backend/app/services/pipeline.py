"""Worker loop that runs pipeline steps and reports them to the state machine."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

from sqlalchemy.exc import SQLAlchemyError
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import settings
from ..core.database import Database
from ..core.errors import InvalidState
from .claims import JobClaimStore
from .job_types import PIPELINE_STEPS, JobStatus
from .jobs import Job, JobStateMachine, JobStore, StepOutcome, StepResult

logger = logging.getLogger(__name__)


class TransientExternalFailure(Exception):
    """Provider hiccup worth retrying (rate limit, timeout, 5xx)."""


class StepFailure(Exception):
    """Terminal failure of a step. The job goes to FAILED."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class PipelineContext:
    job_id: str
    user_id: str
    project_id: str
    step: JobStatus
    artifacts: dict[str, Any] = field(default_factory=dict)
    report: Callable[[int, str | None], None] | None = None

    def report_progress(self, pct: int, message: str | None = None) -> None:
        if self.report is not None:
            self.report(pct, message)


@dataclass
class StepOutput:
    artifacts: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    skipped: bool = False
    final_cost: int | None = None


class StepExecutor(Protocol):
    def __call__(self, context: PipelineContext) -> StepOutput: ...


class LeaseHeartbeat:
    """Renews a job claim in the background while a step executor runs."""

    def __init__(self, claims: JobClaimStore, job_id: str, worker_id: str, step: JobStatus) -> None:
        self.claims = claims
        self.job_id = job_id
        self.worker_id = worker_id
        self.step = step
        self.interval = claims.lease_seconds / 3
        self.lost = False
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"lease-{job_id}", daemon=True)

    def __enter__(self) -> LeaseHeartbeat:
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                renewed = self.claims.renew(self.job_id, self.worker_id, self.step.value)
            except SQLAlchemyError:
                logger.exception("Lease renewal failed", extra={"data": {"job_id": self.job_id}})
                continue
            if not renewed:
                self.lost = True
                logger.warning(
                    "Lease lost while step was running",
                    extra={"data": {"job_id": self.job_id, "worker_id": self.worker_id, "step": self.step.value}},
                )
                return


class PipelineCoordinator:
    def __init__(
        self,
        db: Database,
        executors: Mapping[JobStatus, StepExecutor],
        worker_id: str | None = None,
        *,
        max_attempts: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        missing = [step.value for step in PIPELINE_STEPS if step not in executors]
        if missing:
            raise ValueError(f"No executor configured for: {', '.join(missing)}")
        self.db = db
        self.executors = dict(executors)
        self.worker_id = worker_id or settings.worker_id
        self.store = JobStore(db)
        self.machine = JobStateMachine(db)
        self.claims = JobClaimStore(db, lease_seconds=lease_seconds)
        self.max_attempts = max_attempts or settings.step_max_attempts
        self.backoff_min = settings.step_backoff_min if backoff_min is None else backoff_min
        self.backoff_max = settings.step_backoff_max if backoff_max is None else backoff_max

    def run_job(self, job_id: str) -> Job | None:
        """Run ``job_id`` from its current status until it is READY or FAILED.

        Returns None when another worker holds the job.
        """
        if not self.claims.claim(job_id, self.worker_id):
            logger.info("Job claimed elsewhere, skipping", extra={"data": {"job_id": job_id}})
            return None
        try:
            job = self.store.require_job(job_id)
            while not job.is_terminal:
                step = JobStatus.SCRIPTING if job.status is JobStatus.QUEUED else job.status
                try:
                    if not self.claims.renew(job_id, self.worker_id, step.value):
                        raise InvalidState(f"Claim on job {job_id} was taken over")
                    job = self.machine.start_step(job_id, step, worker_id=self.worker_id)
                    with LeaseHeartbeat(self.claims, job_id, self.worker_id, step) as heartbeat:
                        result = self._run_step(job, step)
                    if heartbeat.lost:
                        raise InvalidState(f"Lease on job {job_id} lost during {step}")
                    job = self.machine.advance(job_id, result, worker_id=self.worker_id)
                except InvalidState as exc:
                    # Cancelled, retried or taken over underneath us; the new owner decides.
                    logger.warning(
                        "Job changed state during step, abandoning run",
                        extra={"data": {"job_id": job_id, "step": step.value, "reason": exc.message}},
                    )
                    return self.store.get_job(job_id)
            return job
        finally:
            self.claims.release(job_id, self.worker_id)

    def run_once(self) -> str | None:
        job_id = self.claims.claim_next(self.worker_id)
        if job_id is None:
            return None
        self.run_job(job_id)
        return job_id

    def run_forever(self, stop_event: threading.Event, poll_interval: float | None = None) -> None:
        interval = settings.worker_poll_interval if poll_interval is None else poll_interval
        logger.info("Worker started", extra={"data": {"worker_id": self.worker_id}})
        while not stop_event.is_set():
            try:
                job_id = self.run_once()
            except Exception:
                logger.exception("Worker iteration failed", extra={"data": {"worker_id": self.worker_id}})
                job_id = None
            if job_id is None:
                stop_event.wait(interval)
        logger.info("Worker stopped", extra={"data": {"worker_id": self.worker_id}})

    def _run_step(self, job: Job, step: JobStatus) -> StepResult:
        context = PipelineContext(
            job_id=job.id,
            user_id=job.user_id,
            project_id=job.project_id,
            step=step,
            artifacts=dict(job.checkpoint.artifacts) if job.checkpoint else {},
            report=lambda pct, message=None: self.machine.report_progress(job.id, step, pct, message),
        )
        try:
            output = self._execute_with_backoff(step, context)
        except StepFailure as exc:
            return StepResult(step=step, outcome=StepOutcome.FAILED, error_code=exc.code, error_message=exc.message)
        except TransientExternalFailure as exc:
            return StepResult(
                step=step,
                outcome=StepOutcome.FAILED,
                error_code="EXTERNAL_UNAVAILABLE",
                error_message=f"{step} failed after {self.max_attempts} attempts: {exc}",
            )
        except Exception as exc:
            logger.exception("Step executor crashed", extra={"data": {"job_id": job.id, "step": step.value}})
            return StepResult(step=step, outcome=StepOutcome.FAILED, error_code="INTERNAL_ERROR", error_message=str(exc))

        return StepResult(
            step=step,
            outcome=StepOutcome.SKIPPED if output.skipped else StepOutcome.SUCCEEDED,
            artifacts=output.artifacts,
            message=output.message,
            final_cost=output.final_cost,
        )

    def _execute_with_backoff(self, step: JobStatus, context: PipelineContext) -> StepOutput:
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(TransientExternalFailure),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(self.executors[step], context)
