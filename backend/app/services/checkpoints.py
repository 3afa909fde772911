"""Checkpoint payloads persisted on ``jobs.checkpoint_state``."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from .job_types import STATUS_ORDER, JobStatus, is_at_or_after, next_status, parse_step

CHECKPOINT_THRESHOLD_STEP = JobStatus.IMAGE_GEN


@dataclass
class CheckpointState:
    last_completed_step: JobStatus
    artifacts: dict[str, Any] = field(default_factory=dict)
    saved_at: int = 0
    progress: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastCompletedStep": self.last_completed_step.value,
            "artifacts": dict(self.artifacts),
            "savedAt": self.saved_at,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CheckpointState | None:
        if not data or not data.get("lastCompletedStep"):
            return None
        return cls(
            last_completed_step=parse_step(data["lastCompletedStep"]),
            artifacts=dict(data.get("artifacts") or {}),
            saved_at=int(data.get("savedAt") or 0),
            progress=int(data.get("progress") or 0),
        )

    def advanced(self, step: JobStatus, artifacts: dict[str, Any] | None, progress: int) -> CheckpointState:
        merged = dict(self.artifacts)
        merged.update(artifacts or {})
        return CheckpointState(
            last_completed_step=step,
            artifacts=merged,
            saved_at=int(time.time()),
            progress=progress,
        )


@dataclass(frozen=True)
class RetryOptions:
    can_retry_from_checkpoint: bool
    next_step: JobStatus | None
    message: str


def can_retry_from_checkpoint(checkpoint: CheckpointState | None) -> bool:
    if checkpoint is None:
        return False
    return is_at_or_after(checkpoint.last_completed_step, CHECKPOINT_THRESHOLD_STEP)


def next_step_from_checkpoint(checkpoint: CheckpointState | None) -> JobStatus | None:
    """Step to resume at. SCRIPTING without a checkpoint, None once PACKAGING is done."""
    if checkpoint is None:
        return STATUS_ORDER[1]
    following = next_status(checkpoint.last_completed_step)
    return None if following is JobStatus.READY else following


def retry_options(checkpoint: CheckpointState | None) -> RetryOptions:
    next_step = next_step_from_checkpoint(checkpoint)
    if can_retry_from_checkpoint(checkpoint):
        return RetryOptions(
            can_retry_from_checkpoint=True,
            next_step=next_step,
            message=f"Retry from {next_step} - generated images and audio will be preserved.",
        )
    return RetryOptions(
        can_retry_from_checkpoint=False,
        next_step=next_step,
        message="Job will restart from the beginning.",
    )
