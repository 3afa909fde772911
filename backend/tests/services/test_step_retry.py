import uuid

import pytest
from sqlalchemy import update

from backend.app.core.config import settings
from backend.app.core.errors import Forbidden, InvalidState, NotFound
from backend.app.db.models import DbJob
from backend.app.services.job_types import PIPELINE_STEPS, JobStatus, StepState
from backend.app.services.jobs import JobStateMachine, StepOutcome, StepResult
from backend.app.services.step_retry import StepRetryController, can_retry_step


def _job_failed_at(db, user_id: str, failed: JobStatus, reserve: int = 50) -> str:
    job_id = uuid.uuid4().hex
    machine = JobStateMachine(db)
    machine.reservations.reserve_credits(user_id, job_id, reserve)
    machine.store.create_job(job_id, user_id, project_id="proj-1")
    for step in PIPELINE_STEPS:
        machine.start_step(job_id, step)
        if step is failed:
            machine.advance(
                job_id,
                StepResult(step=step, outcome=StepOutcome.FAILED, error_code="RENDER_CRASH", error_message="crash"),
            )
            return job_id
        machine.advance(job_id, StepResult(step=step, outcome=StepOutcome.SUCCEEDED, artifacts={step.value: 1}))
    raise AssertionError("step not in pipeline")


def test_can_retry_step_only_from_image_gen() -> None:
    assert can_retry_step("IMAGE_GEN") is True
    assert can_retry_step(JobStatus.PACKAGING) is True
    assert can_retry_step("SCRIPTING") is False
    assert can_retry_step("NOT_A_STEP") is False


def test_retry_step_resets_job_to_step(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.RENDERING)
    controller = StepRetryController(db)

    result = controller.retry_step(job_id, "RENDERING", user_id)

    assert result.success is True
    assert result.new_status is JobStatus.RENDERING
    assert result.message == "Step retry initiated for RENDERING"
    job = controller.store.get_job(job_id)
    assert job.status is JobStatus.RENDERING
    assert job.error_code is None
    assert job.checkpoint.last_completed_step is JobStatus.TIMELINE_BUILD
    states = {s.step_name: s.state for s in controller.store.list_steps(job_id)}
    assert states[JobStatus.TIMELINE_BUILD] is StepState.SUCCEEDED
    assert states[JobStatus.RENDERING] is StepState.PENDING
    assert states[JobStatus.PACKAGING] is StepState.PENDING


def test_retried_job_completes_without_double_charge(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.RENDERING)
    StepRetryController(db).retry_step(job_id, JobStatus.RENDERING, user_id)
    machine = JobStateMachine(db)

    for step in (JobStatus.RENDERING, JobStatus.PACKAGING):
        machine.start_step(job_id, step)
        machine.advance(job_id, StepResult(step=step, outcome=StepOutcome.SUCCEEDED))

    job = machine.store.get_job(job_id)
    assert job.status is JobStatus.READY
    assert job.cost_credits_final == 50
    assert machine.reservations.ledger.get_balance(user_id) == 50


def test_retry_step_preconditions(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.RENDERING)
    controller = StepRetryController(db)

    with pytest.raises(NotFound, match="Job not found"):
        controller.retry_step("missing", "RENDERING", user_id)
    with pytest.raises(Forbidden):
        controller.retry_step(job_id, "RENDERING", "intruder")
    with pytest.raises(InvalidState, match='Step "VOICE_GEN" cannot be retried individually'):
        controller.retry_step(job_id, "VOICE_GEN", user_id)

    controller.retry_step(job_id, "RENDERING", user_id)
    with pytest.raises(InvalidState, match="Current status: RENDERING"):
        controller.retry_step(job_id, "RENDERING", user_id)


@pytest.mark.parametrize("step_name", [s.value for s in PIPELINE_STEPS] + ["NOT_A_STEP"])
def test_retry_step_rejected_while_job_is_running(db, user_id, fund, step_name) -> None:
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.RENDERING)
    controller = StepRetryController(db)
    controller.retry_step(job_id, "RENDERING", user_id)

    with pytest.raises(InvalidState):
        controller.retry_step(job_id, step_name, user_id)

    assert controller.store.get_job(job_id).status is JobStatus.RENDERING


def test_retry_step_loses_race_with_concurrent_transition(db, user_id, fund, monkeypatch) -> None:
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.RENDERING)
    controller = StepRetryController(db)
    original = controller.store.transition_in_session

    def _requeued_first(session, job_id, expected, new, **fields):
        session.execute(
            update(DbJob)
            .where(DbJob.id == job_id)
            .values(status=JobStatus.QUEUED.value)
            .execution_options(synchronize_session=False)
        )
        return original(session, job_id, expected, new, **fields)

    monkeypatch.setattr(controller.store, "transition_in_session", _requeued_first)

    with pytest.raises(InvalidState, match="no longer in FAILED"):
        controller.retry_step(job_id, "RENDERING", user_id)

    assert controller.store.get_job(job_id).status is JobStatus.FAILED
    states = {s.step_name: s.state for s in controller.store.list_steps(job_id)}
    assert states[JobStatus.RENDERING] is StepState.FAILED


def test_retry_step_takes_job_out_of_dead_letter(db, user_id, fund, monkeypatch) -> None:
    monkeypatch.setattr(settings, "max_retry_count", 1)
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.RENDERING)
    machine = JobStateMachine(db)
    assert [j.id for j in machine.list_dead_letter_jobs()] == [job_id]

    StepRetryController(db).retry_step(job_id, "RENDERING", user_id)

    job = machine.store.get_job(job_id)
    assert job.in_dead_letter is False
    assert job.dlq_reason is None
    assert job.retry_count == 0
    assert machine.list_dead_letter_jobs() == []

    for step in (JobStatus.RENDERING, JobStatus.PACKAGING):
        machine.start_step(job_id, step)
        machine.advance(job_id, StepResult(step=step, outcome=StepOutcome.SUCCEEDED))
    assert machine.store.get_job(job_id).status is JobStatus.READY
    assert machine.list_dead_letter_jobs() == []


def test_retry_step_requires_checkpoint(db, user_id, fund) -> None:
    fund(user_id, 100)
    job_id = _job_failed_at(db, user_id, JobStatus.SCRIPTING)

    with pytest.raises(InvalidState, match="No checkpoint state found"):
        StepRetryController(db).retry_step(job_id, "IMAGE_GEN", user_id)
