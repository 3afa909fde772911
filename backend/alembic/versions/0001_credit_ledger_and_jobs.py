"""Credit ledger, jobs, job steps, claims and events.

Revision ID: 0001_credit_ledger_and_jobs
Revises:
Create Date: 2026-01-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_credit_ledger_and_jobs"
down_revision = None
branch_labels = None
depends_on = None

JOB_STATUS_CHECK = (
    "status IN ('QUEUED','SCRIPTING','VOICE_GEN','ALIGNMENT','VISUAL_PLAN','IMAGE_GEN',"
    "'TIMELINE_BUILD','RENDERING','PACKAGING','READY','FAILED')"
)


def upgrade() -> None:
    json_value = sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status_message", sa.Text(), nullable=True),
        sa.Column("cost_credits_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_credits_final", sa.Integer(), nullable=True),
        sa.Column("checkpoint_state", json_value, nullable=True),
        sa.Column("failed_step", sa.String(length=32), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dlq_at", sa.Integer(), nullable=True),
        sa.Column("dlq_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.Integer(), nullable=True),
        sa.Column("finished_at", sa.Integer(), nullable=True),
        sa.CheckConstraint(JOB_STATUS_CHECK, name="chk_jobs_status"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="chk_jobs_progress"),
    )
    op.create_index("ix_jobs_project_id", "jobs", ["project_id"])
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"])
    op.create_index("idx_jobs_user_created_at", "jobs", ["user_id", "created_at"])
    op.create_index("idx_jobs_status", "jobs", ["status"])

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("stripe_payment_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "type IN ('purchase','usage','refund','grant','expire','reserve')",
            name="chk_credit_ledger_type",
        ),
        sa.CheckConstraint("amount != 0", name="chk_credit_ledger_amount_nonzero"),
        sa.UniqueConstraint("idempotency_key", name="uq_credit_ledger_idempotency_key"),
    )
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"])
    op.create_index("ix_credit_ledger_job_id", "credit_ledger", ["job_id"])
    op.create_index("idx_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"])
    op.create_index("idx_credit_ledger_job_type", "credit_ledger", ["job_id", "type"])

    op.create_table(
        "job_steps",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("step_name", sa.String(length=32), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("progress_pct", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("artifacts", json_value, nullable=True),
        sa.Column("started_at", sa.Integer(), nullable=True),
        sa.Column("finished_at", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id", "step_name", name="uq_job_steps_job_step"),
        sa.CheckConstraint(
            "state IN ('pending','started','succeeded','failed','skipped')",
            name="chk_job_steps_state",
        ),
        sa.CheckConstraint("progress_pct BETWEEN 0 AND 100", name="chk_job_steps_progress"),
    )
    op.create_index("ix_job_steps_job_id", "job_steps", ["job_id"])

    op.create_table(
        "job_claims",
        sa.Column("job_id", sa.String(length=64), primary_key=True),
        sa.Column("worker_id", sa.String(length=128), nullable=False),
        sa.Column("step_name", sa.String(length=32), nullable=True),
        sa.Column("claimed_at", sa.Integer(), nullable=False),
        sa.Column("lease_expires_at", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_job_claims_lease_expires_at", "job_claims", ["lease_expires_at"])

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("meta", json_value, nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])
    op.create_index("idx_job_events_job_created", "job_events", ["job_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_job_events_job_created", table_name="job_events")
    op.drop_index("ix_job_events_job_id", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("ix_job_claims_lease_expires_at", table_name="job_claims")
    op.drop_table("job_claims")
    op.drop_index("ix_job_steps_job_id", table_name="job_steps")
    op.drop_table("job_steps")
    op.drop_index("idx_credit_ledger_job_type", table_name="credit_ledger")
    op.drop_index("idx_credit_ledger_user_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_job_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("idx_jobs_status", table_name="jobs")
    op.drop_index("idx_jobs_user_created_at", table_name="jobs")
    op.drop_index("ix_jobs_user_id", table_name="jobs")
    op.drop_index("ix_jobs_project_id", table_name="jobs")
    op.drop_table("jobs")
