"""SQLAlchemy ORM models for the application's relational database."""

from __future__ import annotations

from typing import Any

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base

JSON_VALUE = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

JOB_STATUS_CHECK = (
    "status IN ('QUEUED','SCRIPTING','VOICE_GEN','ALIGNMENT','VISUAL_PLAN','IMAGE_GEN',"
    "'TIMELINE_BUILD','RENDERING','PACKAGING','READY','FAILED')"
)


class DbCreditLedger(Base):
    """
    Signed credit movements. A user's balance is the sum of their rows.
    """
    __tablename__ = "credit_ledger"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(16))
    amount: Mapped[int] = mapped_column(Integer)
    # Reservations are taken before the job row exists, so no FK here.
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    stripe_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint(
            "type IN ('purchase','usage','refund','grant','expire','reserve')",
            name="chk_credit_ledger_type",
        ),
        CheckConstraint("amount != 0", name="chk_credit_ledger_amount_nonzero"),
        UniqueConstraint("idempotency_key", name="uq_credit_ledger_idempotency_key"),
        Index("idx_credit_ledger_user_created", "user_id", "created_at"),
        Index("idx_credit_ledger_job_type", "job_id", "type"),
    )


class DbJob(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32))
    progress: Mapped[int] = mapped_column(Integer, default=0)
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost_credits_reserved: Mapped[int] = mapped_column(Integer, default=0)
    cost_credits_final: Mapped[int | None] = mapped_column(Integer, nullable=True)
    checkpoint_state: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    failed_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    dlq_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dlq_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[int] = mapped_column(Integer)
    started_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finished_at: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(JOB_STATUS_CHECK, name="chk_jobs_status"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="chk_jobs_progress"),
        Index("idx_jobs_user_created_at", "user_id", "created_at"),
        Index("idx_jobs_status", "status"),
    )


class DbJobStep(Base):
    __tablename__ = "job_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    step_name: Mapped[str] = mapped_column(String(32))
    step_order: Mapped[int] = mapped_column(Integer)
    state: Mapped[str] = mapped_column(String(16), default="pending")
    progress_pct: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifacts: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    started_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finished_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("job_id", "step_name", name="uq_job_steps_job_step"),
        CheckConstraint(
            "state IN ('pending','started','succeeded','failed','skipped')",
            name="chk_job_steps_state",
        ),
        CheckConstraint("progress_pct BETWEEN 0 AND 100", name="chk_job_steps_progress"),
    )


class DbJobClaim(Base):
    """Worker lease on a job. At most one row (one owner) per job."""

    __tablename__ = "job_claims"

    job_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    worker_id: Mapped[str] = mapped_column(String(128))
    step_name: Mapped[str | None] = mapped_column(String(32), nullable=True)
    claimed_at: Mapped[int] = mapped_column(Integer)
    lease_expires_at: Mapped[int] = mapped_column(Integer, index=True)


class DbJobEvent(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    stage: Mapped[str] = mapped_column(String(32))
    message: Mapped[str] = mapped_column(Text)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON_VALUE, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        Index("idx_job_events_job_created", "job_id", "created_at"),
    )
