"""Persisted worker leases on jobs. One live claim per job."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from sqlalchemy import delete, or_, select, update

from ..core.config import settings
from ..core.database import Database
from ..db.models import DbJob, DbJobClaim
from .job_types import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobClaim:
    job_id: str
    worker_id: str
    step_name: str | None
    claimed_at: int
    lease_expires_at: int


class JobClaimStore:
    def __init__(self, db: Database, lease_seconds: int | None = None) -> None:
        self.db = db
        self.lease_seconds = lease_seconds or settings.claim_lease_seconds

    def claim(self, job_id: str, worker_id: str, step_name: str | None = None) -> bool:
        """Take the lease on ``job_id``. False when another worker holds a live one."""
        now = int(time.time())
        expires = now + self.lease_seconds
        with self.db.session() as session:
            inserted = session.execute(
                self.db.insert(DbJobClaim)
                .values(
                    job_id=job_id,
                    worker_id=worker_id,
                    step_name=step_name,
                    claimed_at=now,
                    lease_expires_at=expires,
                )
                .on_conflict_do_nothing(index_elements=[DbJobClaim.job_id])
                .returning(DbJobClaim.job_id)
            ).scalar_one_or_none()
            if inserted is not None:
                logger.info("Job claimed", extra={"data": {"job_id": job_id, "worker_id": worker_id}})
                return True

            # Same worker re-claiming, or an expired lease.
            result = session.execute(
                update(DbJobClaim)
                .where(
                    DbJobClaim.job_id == job_id,
                    or_(DbJobClaim.worker_id == worker_id, DbJobClaim.lease_expires_at <= now),
                )
                .values(
                    worker_id=worker_id,
                    step_name=step_name,
                    claimed_at=now,
                    lease_expires_at=expires,
                )
                .execution_options(synchronize_session=False)
            )
            taken = int(result.rowcount or 0) == 1
            if taken:
                logger.info("Job claim taken over", extra={"data": {"job_id": job_id, "worker_id": worker_id}})
            return taken

    def claim_next(self, worker_id: str) -> str | None:
        """Claim the oldest non-terminal job without a live lease."""
        now = int(time.time())
        with self.db.session() as session:
            candidates = session.scalars(
                select(DbJob.id)
                .outerjoin(DbJobClaim, DbJobClaim.job_id == DbJob.id)
                .where(
                    DbJob.status.not_in([s.value for s in TERMINAL_STATUSES]),
                    or_(DbJobClaim.job_id.is_(None), DbJobClaim.lease_expires_at <= now),
                )
                .order_by(DbJob.created_at, DbJob.id)
                .limit(10)
            ).all()
        for job_id in candidates:
            if self.claim(job_id, worker_id):
                return job_id
        return None

    def renew(self, job_id: str, worker_id: str, step_name: str | None = None) -> bool:
        now = int(time.time())
        values: dict[str, object] = {"lease_expires_at": now + self.lease_seconds}
        if step_name is not None:
            values["step_name"] = step_name
        with self.db.session() as session:
            result = session.execute(
                update(DbJobClaim)
                .where(DbJobClaim.job_id == job_id, DbJobClaim.worker_id == worker_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0) == 1

    def release(self, job_id: str, worker_id: str) -> None:
        with self.db.session() as session:
            session.execute(
                delete(DbJobClaim).where(DbJobClaim.job_id == job_id, DbJobClaim.worker_id == worker_id)
            )

    def get_claim(self, job_id: str) -> JobClaim | None:
        with self.db.session() as session:
            row = session.get(DbJobClaim, job_id)
            if row is None:
                return None
            return JobClaim(
                job_id=row.job_id,
                worker_id=row.worker_id,
                step_name=row.step_name,
                claimed_at=row.claimed_at,
                lease_expires_at=row.lease_expires_at,
            )
