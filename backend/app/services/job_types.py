"""Closed vocabularies for ledger entries, job statuses and step states."""

from __future__ import annotations

from enum import StrEnum
from typing import TypeVar

from ..core.errors import InvalidState


class LedgerEntryType(StrEnum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    GRANT = "grant"
    EXPIRE = "expire"
    RESERVE = "reserve"


class JobStatus(StrEnum):
    QUEUED = "QUEUED"
    SCRIPTING = "SCRIPTING"
    VOICE_GEN = "VOICE_GEN"
    ALIGNMENT = "ALIGNMENT"
    VISUAL_PLAN = "VISUAL_PLAN"
    IMAGE_GEN = "IMAGE_GEN"
    TIMELINE_BUILD = "TIMELINE_BUILD"
    RENDERING = "RENDERING"
    PACKAGING = "PACKAGING"
    READY = "READY"
    FAILED = "FAILED"


class StepState(StrEnum):
    PENDING = "pending"
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# Happy path, QUEUED through READY. FAILED sits outside the order.
STATUS_ORDER: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.SCRIPTING,
    JobStatus.VOICE_GEN,
    JobStatus.ALIGNMENT,
    JobStatus.VISUAL_PLAN,
    JobStatus.IMAGE_GEN,
    JobStatus.TIMELINE_BUILD,
    JobStatus.RENDERING,
    JobStatus.PACKAGING,
    JobStatus.READY,
)

PIPELINE_STEPS: tuple[JobStatus, ...] = STATUS_ORDER[1:-1]

STEP_PROGRESS: dict[JobStatus, int] = {
    JobStatus.QUEUED: 0,
    JobStatus.SCRIPTING: 10,
    JobStatus.VOICE_GEN: 20,
    JobStatus.ALIGNMENT: 30,
    JobStatus.VISUAL_PLAN: 40,
    JobStatus.IMAGE_GEN: 50,
    JobStatus.TIMELINE_BUILD: 70,
    JobStatus.RENDERING: 80,
    JobStatus.PACKAGING: 90,
    JobStatus.READY: 100,
}

TERMINAL_STATUSES = frozenset({JobStatus.READY, JobStatus.FAILED})

_E = TypeVar("_E", bound=StrEnum)


def _parse(enum_cls: type[_E], value: str | _E, label: str) -> _E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidState(f"Unknown {label}: {value!r}") from exc


def parse_status(value: str | JobStatus) -> JobStatus:
    return _parse(JobStatus, value, "job status")


def parse_step(value: str | JobStatus) -> JobStatus:
    """Parse a pipeline step name. Only SCRIPTING..PACKAGING are steps."""
    status = parse_status(value)
    if status not in PIPELINE_STEPS:
        raise InvalidState(f"{status} is not a pipeline step")
    return status


def parse_entry_type(value: str | LedgerEntryType) -> LedgerEntryType:
    return _parse(LedgerEntryType, value, "ledger entry type")


def status_index(status: JobStatus) -> int:
    if status is JobStatus.FAILED:
        raise InvalidState("FAILED has no position in the pipeline order")
    return STATUS_ORDER.index(status)


def next_status(status: JobStatus) -> JobStatus:
    """Return the state after ``status``. PACKAGING advances to READY."""
    if status in TERMINAL_STATUSES:
        raise InvalidState(f"{status} is terminal")
    return STATUS_ORDER[status_index(status) + 1]


def is_at_or_after(status: JobStatus, threshold: JobStatus) -> bool:
    return status_index(status) >= status_index(threshold)
