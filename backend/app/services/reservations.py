"""Reserve, finalize and release credits held against a job."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..core.database import Database
from ..core.errors import InsufficientCredits
from ..db.models import DbCreditLedger, DbJob
from .job_types import LedgerEntryType
from .ledger import LedgerStore, make_idempotency_key
from .refund_policy import calculate_refund_amount

logger = logging.getLogger(__name__)

RESERVE_NOTE = "Reserved for job"
FINALIZE_NOTE = "Video generation completed"
PARTIAL_REFUND_NOTE = "Partial refund - actual cost less than reserved"
EXTRA_USAGE_NOTE = "Additional usage beyond reservation"
RELEASE_NOTE = "Refund - job failed"
RETAINED_NOTE = "Job failed after refund threshold - credits retained"


@dataclass(frozen=True)
class Settlement:
    job_id: str
    reserved: int
    refunded: int


class ReservationManager:
    def __init__(self, db: Database, ledger: LedgerStore | None = None) -> None:
        self.db = db
        self.ledger = ledger or LedgerStore(db)

    # -- reserve ------------------------------------------------------------

    def reserve_credits(self, user_id: str, job_id: str, amount: int) -> int:
        """Hold ``amount`` credits for ``job_id``. Returns the balance left.

        Raises ``InsufficientCredits`` without writing anything when the
        balance does not cover the hold.
        """
        if amount <= 0:
            raise ValueError("Reservation amount must be positive")

        with self.db.session() as session:
            self.ledger.lock_user(session, user_id)
            available = self.ledger.balance_in_session(session, user_id)
            if available < amount:
                logger.info(
                    "Reservation rejected: insufficient credits",
                    extra={"data": {"user_id": user_id, "job_id": job_id, "required": amount, "available": available}},
                )
                raise InsufficientCredits(required=amount, available=available)

            self.ledger.record_in_session(
                session,
                user_id=user_id,
                type=LedgerEntryType.RESERVE,
                amount=-amount,
                job_id=job_id,
                note=RESERVE_NOTE,
            )
            session.execute(
                update(DbJob)
                .where(DbJob.id == job_id)
                .values(cost_credits_reserved=DbJob.cost_credits_reserved + amount)
            )
            return available - amount

    # -- finalize -----------------------------------------------------------

    def finalize_credits(self, user_id: str, job_id: str, final_cost: int) -> int:
        with self.db.session() as session:
            return self.finalize_in_session(session, user_id, job_id, final_cost)

    def finalize_in_session(
        self,
        session: Session,
        user_id: str,
        job_id: str,
        final_cost: int,
        cap_to_balance: bool = False,
    ) -> int:
        """Turn the job's holds into its permanent charge of ``final_cost``.

        Returns the amount that was held. A job already finalized, or one
        with nothing held, is left untouched and 0 is returned.

        With ``cap_to_balance`` the usage beyond the hold is limited to what
        the user can still pay, and ``cost_credits_final`` records the amount
        actually charged, instead of raising ``InsufficientCredits``.
        """
        if final_cost < 0:
            raise ValueError("final_cost must not be negative")

        self.ledger.lock_user(session, user_id)
        job = session.get(DbJob, job_id)
        if job is not None and job.cost_credits_final is not None:
            return 0

        rows = self._reserve_rows(session, job_id, user_id)
        if not rows:
            return 0

        reserved = -sum(row.amount for row in rows)
        for row in rows:
            row.type = LedgerEntryType.USAGE.value
            row.note = FINALIZE_NOTE
        session.flush()

        charged = final_cost
        if final_cost < reserved:
            self.ledger.record_in_session(
                session,
                user_id=user_id,
                type=LedgerEntryType.REFUND,
                amount=reserved - final_cost,
                job_id=job_id,
                note=PARTIAL_REFUND_NOTE,
                idempotency_key=make_idempotency_key("finalize", job_id, "refund"),
            )
        elif final_cost > reserved:
            extra = final_cost - reserved
            if cap_to_balance:
                available = max(self.ledger.balance_in_session(session, user_id), 0)
                if available < extra:
                    logger.warning(
                        "Final cost exceeds balance, extra usage capped",
                        extra={
                            "data": {
                                "user_id": user_id,
                                "job_id": job_id,
                                "final_cost": final_cost,
                                "shortfall": extra - available,
                            }
                        },
                    )
                    extra = available
            if extra > 0:
                self.ledger.record_in_session(
                    session,
                    user_id=user_id,
                    type=LedgerEntryType.USAGE,
                    amount=-extra,
                    job_id=job_id,
                    note=EXTRA_USAGE_NOTE,
                    idempotency_key=make_idempotency_key("finalize", job_id, "usage"),
                )
            charged = reserved + extra

        if job is not None:
            job.cost_credits_final = charged

        logger.info(
            "Credits finalized",
            extra={"data": {"user_id": user_id, "job_id": job_id, "reserved": reserved, "final_cost": charged}},
        )
        return reserved

    # -- release ------------------------------------------------------------

    def release_reserved_credits(
        self,
        job_id: str,
        user_id: str | None = None,
        note: str = RELEASE_NOTE,
    ) -> int:
        with self.db.session() as session:
            return self.release_in_session(session, job_id, user_id=user_id, note=note)

    def release_in_session(
        self,
        session: Session,
        job_id: str,
        user_id: str | None = None,
        note: str = RELEASE_NOTE,
    ) -> int:
        """Convert every ``reserve`` row of the job into a positive ``refund`` row.

        Returns the number of credits released; 0 when nothing was held.
        """
        return self._convert_reserve_rows(session, job_id, user_id, LedgerEntryType.REFUND, note)

    def retain_in_session(self, session: Session, job_id: str, user_id: str | None = None) -> int:
        """Keep the held credits as the job's charge (``reserve`` becomes ``usage``)."""
        return self._convert_reserve_rows(session, job_id, user_id, LedgerEntryType.USAGE, RETAINED_NOTE)

    def reserved_amount_in_session(self, session: Session, job_id: str) -> int:
        return -sum(row.amount for row in self._reserve_rows(session, job_id, None))

    # -- failure settlement -------------------------------------------------

    def settle_failed_job(self, job_id: str) -> Settlement:
        with self.db.session() as session:
            job = session.get(DbJob, job_id)
            if job is None:
                # Reservation without a job row: nothing ran, return everything.
                refunded = self.release_in_session(session, job_id)
                return Settlement(job_id=job_id, reserved=refunded, refunded=refunded)
            return self.settle_in_session(session, job)

    def settle_in_session(self, session: Session, job: DbJob) -> Settlement:
        """Apply the refund policy to a failed job's outstanding holds."""
        self.ledger.lock_user(session, job.user_id)
        reserved = self.reserved_amount_in_session(session, job.id)
        refund = calculate_refund_amount(reserved, job.progress)

        if refund > 0:
            self.release_in_session(session, job.id, user_id=job.user_id)
        elif reserved > 0:
            self.retain_in_session(session, job.id, user_id=job.user_id)

        logger.info(
            "Failed job settled",
            extra={
                "data": {
                    "job_id": job.id,
                    "user_id": job.user_id,
                    "progress": job.progress,
                    "reserved": reserved,
                    "refunded": refund,
                }
            },
        )
        return Settlement(job_id=job.id, reserved=reserved, refunded=refund)

    # -- helpers ------------------------------------------------------------

    def _reserve_rows(self, session: Session, job_id: str, user_id: str | None) -> list[DbCreditLedger]:
        stmt = select(DbCreditLedger).where(
            DbCreditLedger.job_id == job_id,
            DbCreditLedger.type == LedgerEntryType.RESERVE.value,
        )
        if user_id is not None:
            stmt = stmt.where(DbCreditLedger.user_id == user_id)
        return list(session.scalars(stmt.order_by(DbCreditLedger.created_at, DbCreditLedger.id)).all())

    def _convert_reserve_rows(
        self,
        session: Session,
        job_id: str,
        user_id: str | None,
        new_type: LedgerEntryType,
        note: str,
    ) -> int:
        owners = [user_id] if user_id is not None else self._reserve_owners(session, job_id)
        for owner in sorted(owners):
            self.ledger.lock_user(session, owner)

        rows = self._reserve_rows(session, job_id, user_id)
        if not rows:
            return 0

        total = -sum(row.amount for row in rows)
        for row in rows:
            row.type = new_type.value
            row.note = note
            if new_type is LedgerEntryType.REFUND:
                row.amount = -row.amount
        session.flush()

        logger.info(
            "Reserved credits converted",
            extra={"data": {"job_id": job_id, "to": new_type.value, "amount": total, "rows": len(rows)}},
        )
        return total

    def _reserve_owners(self, session: Session, job_id: str) -> list[str]:
        return list(
            session.scalars(
                select(DbCreditLedger.user_id)
                .where(DbCreditLedger.job_id == job_id, DbCreditLedger.type == LedgerEntryType.RESERVE.value)
                .distinct()
            ).all()
        )
