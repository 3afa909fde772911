"""Refund decisions for failed jobs.

A job failing before the threshold (by default, before ALIGNMENT starts) gets
its whole reservation back. Past it, script and voice generation have already
been paid for upstream and the held credits are kept.
"""

from __future__ import annotations

from ..core.config import settings
from .job_types import JobStatus

REFUND_THRESHOLD_STAGE = JobStatus.ALIGNMENT


def refund_threshold() -> int:
    return settings.refund_threshold_progress


def should_refund_credits(progress: int, threshold: int | None = None) -> bool:
    limit = refund_threshold() if threshold is None else threshold
    return progress < limit


def calculate_refund_amount(reserved: int, progress: int, threshold: int | None = None) -> int:
    if reserved <= 0:
        return 0
    return reserved if should_refund_credits(progress, threshold) else 0
