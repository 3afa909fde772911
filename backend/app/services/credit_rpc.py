"""Narrow credit surface used by purchase, grant and job-creation flows."""

from __future__ import annotations

from ..core.database import Database
from ..core.errors import InsufficientCredits
from .job_types import LedgerEntryType, parse_entry_type
from .ledger import LedgerStore
from .reservations import ReservationManager


ADDITIVE_TYPES = (LedgerEntryType.PURCHASE, LedgerEntryType.GRANT)


class CreditRpc:
    def __init__(self, db: Database) -> None:
        self.ledger = LedgerStore(db)
        self.reservations = ReservationManager(db, self.ledger)

    def reserve_credits(self, user_id: str, job_id: str, amount: int) -> bool:
        """False on insufficient balance, nothing written."""
        try:
            self.reservations.reserve_credits(user_id, job_id, amount)
        except InsufficientCredits:
            return False
        return True

    def release_job_credits(self, job_id: str) -> None:
        self.reservations.release_reserved_credits(job_id)

    def finalize_credits(self, user_id: str, job_id: str, final_cost: int) -> None:
        self.reservations.finalize_credits(user_id, job_id, final_cost)

    def add_credits(
        self,
        user_id: str,
        amount: int,
        type: LedgerEntryType | str = LedgerEntryType.GRANT,
        note: str | None = None,
        idempotency_key: str | None = None,
        stripe_payment_id: str | None = None,
    ) -> None:
        entry_type = parse_entry_type(type)
        if entry_type not in ADDITIVE_TYPES:
            raise ValueError(f"add_credits only records purchase or grant entries, not {entry_type.value}")
        if amount <= 0:
            raise ValueError("add_credits amount must be positive")
        self.ledger.record_transaction(
            user_id,
            entry_type,
            amount,
            note=note,
            idempotency_key=idempotency_key,
            stripe_payment_id=stripe_payment_id,
        )

    def get_credit_balance(self, user_id: str) -> int:
        return self.ledger.get_balance(user_id)
