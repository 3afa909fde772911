import uuid

import pytest

from backend.app.core.config import settings
from backend.app.core.errors import Forbidden, InvalidState
from backend.app.services.job_types import PIPELINE_STEPS, JobStatus, StepState
from backend.app.services.jobs import CANCELLED_CODE, JobStateMachine, StepOutcome, StepResult
from backend.app.services.reservations import ReservationManager


def _seed_job(db, user_id: str, reserve: int = 50) -> str:
    job_id = uuid.uuid4().hex
    machine = JobStateMachine(db)
    machine.reservations.reserve_credits(user_id, job_id, reserve)
    machine.store.create_job(job_id, user_id, project_id="proj-1")
    return job_id


def _run_until(machine: JobStateMachine, job_id: str, stop_before: JobStatus | None = None) -> None:
    for step in PIPELINE_STEPS:
        if step is stop_before:
            return
        machine.start_step(job_id, step)
        machine.advance(job_id, StepResult(step=step, outcome=StepOutcome.SUCCEEDED, artifacts={step.value: "done"}))


def _fail(machine: JobStateMachine, job_id: str, step: JobStatus):
    machine.start_step(job_id, step)
    return machine.advance(
        job_id,
        StepResult(step=step, outcome=StepOutcome.FAILED, error_code="PROVIDER_ERROR", error_message="boom"),
    )


def test_create_job_starts_queued_with_pending_steps(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id, 40)
    machine = JobStateMachine(db)

    job = machine.store.get_job(job_id)
    steps = machine.store.list_steps(job_id)

    assert job.status is JobStatus.QUEUED
    assert job.progress == 0
    assert job.cost_credits_reserved == 40
    assert [s.step_name for s in steps] == list(PIPELINE_STEPS)
    assert all(s.state is StepState.PENDING for s in steps)
    assert machine.store.list_events(job_id)[0].message == "Job created"


def test_full_run_finalizes_credits(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id, 50)
    machine = JobStateMachine(db)

    _run_until(machine, job_id)

    job = machine.store.get_job(job_id)
    assert job.status is JobStatus.READY
    assert job.progress == 100
    assert job.cost_credits_final == 50
    assert job.checkpoint is None
    assert job.finished_at is not None
    assert machine.reservations.ledger.get_balance(user_id) == 50
    assert all(s.state is StepState.SUCCEEDED for s in machine.store.list_steps(job_id))


def test_final_cost_from_last_step_is_used(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id, 50)
    machine = JobStateMachine(db)
    _run_until(machine, job_id, stop_before=JobStatus.PACKAGING)

    machine.start_step(job_id, JobStatus.PACKAGING)
    job = machine.advance(
        job_id, StepResult(step=JobStatus.PACKAGING, outcome=StepOutcome.SUCCEEDED, final_cost=42)
    )

    assert job.cost_credits_final == 42
    assert machine.reservations.ledger.get_balance(user_id) == 58


def test_progress_is_monotonic_along_the_run(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)
    seen = []

    for step in PIPELINE_STEPS:
        seen.append(machine.start_step(job_id, step).progress)
        seen.append(machine.advance(job_id, StepResult(step=step, outcome=StepOutcome.SUCCEEDED)).progress)

    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_checkpoint_accumulates_artifacts(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)
    _run_until(machine, job_id, stop_before=JobStatus.TIMELINE_BUILD)

    checkpoint = machine.store.load_checkpoint(job_id)

    assert checkpoint.last_completed_step is JobStatus.IMAGE_GEN
    assert checkpoint.artifacts["SCRIPTING"] == "done"
    assert checkpoint.artifacts["IMAGE_GEN"] == "done"


def test_skipped_step_advances_without_artifacts(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)
    machine.start_step(job_id, JobStatus.SCRIPTING)

    job = machine.advance(job_id, StepResult(step=JobStatus.SCRIPTING, outcome=StepOutcome.SKIPPED))

    assert job.status is JobStatus.VOICE_GEN
    assert machine.store.list_steps(job_id)[0].state is StepState.SKIPPED


def test_early_failure_refunds_reservation(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id, 40)
    machine = JobStateMachine(db)
    _run_until(machine, job_id, stop_before=JobStatus.VOICE_GEN)

    job = _fail(machine, job_id, JobStatus.VOICE_GEN)

    assert job.status is JobStatus.FAILED
    assert job.failed_step is JobStatus.VOICE_GEN
    assert job.error_code == "PROVIDER_ERROR"
    assert job.retry_count == 1
    assert job.progress == 20
    assert machine.reservations.ledger.get_balance(user_id) == 100


def test_late_failure_retains_reservation(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id, 40)
    machine = JobStateMachine(db)
    _run_until(machine, job_id, stop_before=JobStatus.IMAGE_GEN)

    job = _fail(machine, job_id, JobStatus.IMAGE_GEN)

    assert job.status is JobStatus.FAILED
    assert job.checkpoint.last_completed_step is JobStatus.VISUAL_PLAN
    assert machine.reservations.ledger.get_balance(user_id) == 60


def test_advance_rejects_wrong_step(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)
    machine.start_step(job_id, JobStatus.SCRIPTING)

    with pytest.raises(InvalidState):
        machine.advance(job_id, StepResult(step=JobStatus.VOICE_GEN, outcome=StepOutcome.SUCCEEDED))


def test_start_step_cannot_skip_ahead(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)

    with pytest.raises(InvalidState):
        JobStateMachine(db).start_step(job_id, JobStatus.RENDERING)


def test_report_progress_validates_range(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)
    machine.start_step(job_id, JobStatus.SCRIPTING)

    machine.report_progress(job_id, JobStatus.SCRIPTING, 40, "Drafting")
    step = machine.store.list_steps(job_id)[0]
    assert (step.progress_pct, step.message) == (40, "Drafting")

    with pytest.raises(ValueError):
        machine.report_progress(job_id, JobStatus.SCRIPTING, 101)


def test_cancel_queued_job_refunds_without_counting_retry(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id, 30)
    machine = JobStateMachine(db)

    job = machine.cancel(job_id, user_id)

    assert job.status is JobStatus.FAILED
    assert job.error_code == CANCELLED_CODE
    assert job.retry_count == 0
    assert job.failed_step is None
    assert machine.reservations.ledger.get_balance(user_id) == 100


def test_cancel_rejects_other_users_and_terminal_jobs(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)

    with pytest.raises(Forbidden):
        machine.cancel(job_id, "someone-else")

    machine.cancel(job_id, user_id)
    with pytest.raises(InvalidState):
        machine.cancel(job_id, user_id)


def test_repeated_failure_moves_job_to_dead_letter(db, user_id, fund, monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_retry_count", 1)
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)

    job = _fail(machine, job_id, JobStatus.SCRIPTING)

    assert job.in_dead_letter
    assert "PROVIDER_ERROR" in job.dlq_reason
    assert [j.id for j in machine.list_dead_letter_jobs()] == [job_id]


def test_requeue_from_dead_letter_resets_job(db, user_id, fund, monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_retry_count", 1)
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)
    machine = JobStateMachine(db)
    _fail(machine, job_id, JobStatus.SCRIPTING)

    job = machine.requeue_from_dead_letter(job_id)

    assert job.status is JobStatus.QUEUED
    assert job.retry_count == 0
    assert job.dlq_at is None
    assert job.error_code is None
    assert all(s.state is StepState.PENDING for s in machine.store.list_steps(job_id))
    assert machine.list_dead_letter_jobs() == []


def test_requeue_rejects_jobs_outside_dead_letter(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _seed_job(db, user_id)

    with pytest.raises(InvalidState):
        JobStateMachine(db).requeue_from_dead_letter(job_id)


def test_shared_reservation_manager_is_used(db) -> None:
    manager = ReservationManager(db)
    assert JobStateMachine(db, manager).reservations is manager
