"""Append-style credit ledger. Balances are derived, never stored."""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.database import Database
from ..core.errors import InsufficientCredits
from ..db.models import DbCreditLedger
from .job_types import LedgerEntryType, parse_entry_type

logger = logging.getLogger(__name__)

LOCK_NAMESPACE = "credits"


def make_idempotency_key(*parts: str) -> str:
    payload = "|".join(parts).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:32]


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    user_id: str
    type: LedgerEntryType
    amount: int
    job_id: str | None
    note: str | None
    idempotency_key: str | None
    created_at: int
    stripe_payment_id: str | None = None


def _entry_from_row(row: DbCreditLedger) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        type=LedgerEntryType(row.type),
        amount=row.amount,
        job_id=row.job_id,
        note=row.note,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
        stripe_payment_id=row.stripe_payment_id,
    )


class LedgerStore:
    """Owns every write to ``credit_ledger``.

    Each balance-affecting write runs in one transaction that first takes the
    per-user lock, so the balance read and the entry insert cannot interleave
    with another writer for the same user.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def lock_user(self, session: Session, user_id: str) -> None:
        self.db.lock_key(session, LOCK_NAMESPACE, user_id)

    def record_transaction(
        self,
        user_id: str,
        type: LedgerEntryType | str,
        amount: int,
        job_id: str | None = None,
        note: str | None = None,
        idempotency_key: str | None = None,
        stripe_payment_id: str | None = None,
    ) -> str:
        """Insert one signed entry and return its id.

        A repeated ``idempotency_key`` returns the id of the entry that first
        used it and writes nothing.
        """
        with self.db.session() as session:
            self.lock_user(session, user_id)
            return self.record_in_session(
                session,
                user_id=user_id,
                type=type,
                amount=amount,
                job_id=job_id,
                note=note,
                idempotency_key=idempotency_key,
                stripe_payment_id=stripe_payment_id,
            )

    def record_in_session(
        self,
        session: Session,
        *,
        user_id: str,
        type: LedgerEntryType | str,
        amount: int,
        job_id: str | None = None,
        note: str | None = None,
        idempotency_key: str | None = None,
        stripe_payment_id: str | None = None,
    ) -> str:
        entry_type = parse_entry_type(type)
        if amount == 0:
            raise ValueError("Ledger amount must be non-zero")
        if not user_id:
            raise ValueError("user_id is required")

        if idempotency_key:
            existing = self._find_by_idempotency_key(session, idempotency_key)
            if existing is not None:
                logger.info(
                    "Ledger: duplicate idempotency key, skipping",
                    extra={"data": {"user_id": user_id, "idempotency_key": idempotency_key, "entry_id": existing}},
                )
                return existing

        if amount < 0:
            available = self.balance_in_session(session, user_id)
            if available + amount < 0:
                raise InsufficientCredits(required=-amount, available=available)

        entry_id = uuid.uuid4().hex
        now = int(time.time())
        if idempotency_key:
            stmt = (
                self.db.insert(DbCreditLedger)
                .values(
                    id=entry_id,
                    user_id=user_id,
                    type=entry_type.value,
                    amount=amount,
                    job_id=job_id,
                    note=note,
                    idempotency_key=idempotency_key,
                    stripe_payment_id=stripe_payment_id,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=[DbCreditLedger.idempotency_key])
            )
            inserted = session.execute(stmt.returning(DbCreditLedger.id)).scalar_one_or_none()
            if inserted is None:
                # Key taken by a writer holding a different user's lock.
                existing = self._find_by_idempotency_key(session, idempotency_key)
                if existing is None:
                    raise RuntimeError("Idempotency key conflict without a matching entry")
                return existing
        else:
            session.add(
                DbCreditLedger(
                    id=entry_id,
                    user_id=user_id,
                    type=entry_type.value,
                    amount=amount,
                    job_id=job_id,
                    note=note,
                    stripe_payment_id=stripe_payment_id,
                    created_at=now,
                )
            )
            session.flush()

        logger.info(
            "Ledger: entry recorded",
            extra={
                "data": {
                    "entry_id": entry_id,
                    "user_id": user_id,
                    "type": entry_type.value,
                    "amount": amount,
                    "job_id": job_id,
                }
            },
        )
        return entry_id

    def get_balance(self, user_id: str) -> int:
        with self.db.session() as session:
            return self.balance_in_session(session, user_id)

    def balance_in_session(self, session: Session, user_id: str) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(DbCreditLedger.amount), 0)).where(DbCreditLedger.user_id == user_id)
        )
        return int(total or 0)

    def list_entries(self, user_id: str, limit: int = 20, offset: int = 0) -> list[LedgerEntry]:
        with self.db.session() as session:
            rows = session.scalars(
                select(DbCreditLedger)
                .where(DbCreditLedger.user_id == user_id)
                .order_by(DbCreditLedger.created_at.desc(), DbCreditLedger.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [_entry_from_row(row) for row in rows]

    def count_entries(self, user_id: str) -> int:
        with self.db.session() as session:
            count = session.scalar(
                select(func.count()).select_from(DbCreditLedger).where(DbCreditLedger.user_id == user_id)
            )
            return int(count or 0)

    def entries_for_job(self, job_id: str, type: LedgerEntryType | str | None = None) -> list[LedgerEntry]:
        """All entries referencing ``job_id``, oldest first."""
        stmt = select(DbCreditLedger).where(DbCreditLedger.job_id == job_id)
        if type is not None:
            stmt = stmt.where(DbCreditLedger.type == parse_entry_type(type).value)
        with self.db.session() as session:
            rows = session.scalars(stmt.order_by(DbCreditLedger.created_at, DbCreditLedger.id)).all()
            return [_entry_from_row(row) for row in rows]

    def _find_by_idempotency_key(self, session: Session, key: str) -> str | None:
        return session.scalar(
            select(DbCreditLedger.id).where(DbCreditLedger.idempotency_key == key).limit(1)
        )
