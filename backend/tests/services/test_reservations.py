import threading
import uuid

import pytest

from backend.app.core.errors import InsufficientCredits
from backend.app.db.models import DbJob
from backend.app.services.job_types import LedgerEntryType
from backend.app.services.jobs import JobStore
from backend.app.services.ledger import LedgerStore
from backend.app.services.reservations import (
    PARTIAL_REFUND_NOTE,
    RETAINED_NOTE,
    ReservationManager,
)


def _seed_job(db, user_id: str, reserve: int) -> str:
    job_id = uuid.uuid4().hex
    ReservationManager(db).reserve_credits(user_id, job_id, reserve)
    JobStore(db).create_job(job_id, user_id, project_id="proj-1")
    return job_id


def _set_progress(db, job_id: str, progress: int) -> None:
    with db.session() as session:
        session.get(DbJob, job_id).progress = progress


def _types(ledger: LedgerStore, job_id: str) -> list[str]:
    return sorted(entry.type.value for entry in ledger.entries_for_job(job_id))


def test_reserve_reduces_balance_and_records_job_hold(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 40)

    assert manager.ledger.get_balance(user_id) == 60
    assert JobStore(db).get_job(job_id).cost_credits_reserved == 40

    remaining = manager.reserve_credits(user_id, job_id, 10)
    assert remaining == 50
    assert JobStore(db).get_job(job_id).cost_credits_reserved == 50


def test_reserve_insufficient_writes_nothing(db, user_id, fund) -> None:
    fund(user_id, 30)
    manager = ReservationManager(db)

    with pytest.raises(InsufficientCredits) as exc_info:
        manager.reserve_credits(user_id, "job-none", 31)

    assert exc_info.value.required == 31
    assert exc_info.value.available == 30
    assert manager.ledger.entries_for_job("job-none") == []
    assert manager.ledger.get_balance(user_id) == 30


def test_reserve_rejects_non_positive_amount(db, user_id) -> None:
    with pytest.raises(ValueError):
        ReservationManager(db).reserve_credits(user_id, "job-z", 0)


def test_concurrent_reservations_never_overdraw(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _reserve(job_id: str) -> None:
        barrier.wait()
        try:
            manager.reserve_credits(user_id, job_id, 60)
            result = "ok"
        except InsufficientCredits:
            result = "rejected"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_reserve, args=(f"job-{i}",)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["ok", "rejected"]
    assert manager.ledger.get_balance(user_id) == 40


def test_failed_job_before_threshold_is_fully_refunded(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 40)
    _set_progress(db, job_id, 20)

    settlement = manager.settle_failed_job(job_id)

    assert settlement.refunded == 40
    assert manager.ledger.get_balance(user_id) == 100
    refunds = manager.ledger.entries_for_job(job_id, LedgerEntryType.REFUND)
    assert [e.amount for e in refunds] == [40]
    assert manager.ledger.entries_for_job(job_id, LedgerEntryType.RESERVE) == []


def test_failed_job_past_threshold_keeps_charge(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 40)
    _set_progress(db, job_id, 35)

    settlement = manager.settle_failed_job(job_id)

    assert settlement.reserved == 40
    assert settlement.refunded == 0
    assert manager.ledger.get_balance(user_id) == 60
    usage = manager.ledger.entries_for_job(job_id, LedgerEntryType.USAGE)
    assert [(e.amount, e.note) for e in usage] == [(-40, RETAINED_NOTE)]


def test_finalize_without_discrepancy(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 50)

    reserved = manager.finalize_credits(user_id, job_id, 50)

    assert reserved == 50
    assert manager.ledger.get_balance(user_id) == 50
    assert JobStore(db).get_job(job_id).cost_credits_final == 50
    assert _types(manager.ledger, job_id) == ["usage"]


def test_finalize_refunds_unused_hold(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 50)

    manager.finalize_credits(user_id, job_id, 35)

    assert manager.ledger.get_balance(user_id) == 65
    refunds = manager.ledger.entries_for_job(job_id, LedgerEntryType.REFUND)
    assert [(e.amount, e.note) for e in refunds] == [(15, PARTIAL_REFUND_NOTE)]


def test_finalize_charges_extra_usage(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 50)

    manager.finalize_credits(user_id, job_id, 60)

    assert manager.ledger.get_balance(user_id) == 40
    assert JobStore(db).get_job(job_id).cost_credits_final == 60


def test_finalize_extra_usage_beyond_balance_is_rejected(db, user_id, fund) -> None:
    fund(user_id, 60)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 50)

    with pytest.raises(InsufficientCredits):
        manager.finalize_credits(user_id, job_id, 80)

    assert manager.ledger.get_balance(user_id) == 10
    assert _types(manager.ledger, job_id) == ["reserve"]


def test_finalize_capped_to_balance_charges_what_is_left(db, user_id, fund) -> None:
    fund(user_id, 60)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 50)

    with db.session() as session:
        manager.finalize_in_session(session, user_id, job_id, 80, cap_to_balance=True)

    assert manager.ledger.get_balance(user_id) == 0
    assert JobStore(db).get_job(job_id).cost_credits_final == 60
    assert _types(manager.ledger, job_id) == ["usage", "usage"]


def test_finalize_twice_is_a_no_op(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 50)

    manager.finalize_credits(user_id, job_id, 30)
    assert manager.finalize_credits(user_id, job_id, 30) == 0

    assert manager.ledger.get_balance(user_id) == 70


def test_multiple_reservations_are_released_together(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    manager.reserve_credits(user_id, "job-m", 30)
    manager.reserve_credits(user_id, "job-m", 20)
    assert manager.ledger.get_balance(user_id) == 50

    released = manager.release_reserved_credits("job-m")

    assert released == 50
    assert manager.ledger.get_balance(user_id) == 100
    assert _types(manager.ledger, "job-m") == ["refund", "refund"]


def test_release_is_idempotent(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    job_id = _seed_job(db, user_id, 40)

    assert manager.release_reserved_credits(job_id) == 40
    assert manager.release_reserved_credits(job_id) == 0
    assert manager.ledger.get_balance(user_id) == 100


def test_release_without_job_row_returns_everything(db, user_id, fund) -> None:
    fund(user_id, 100)
    manager = ReservationManager(db)
    manager.reserve_credits(user_id, "orphan", 25)

    settlement = manager.settle_failed_job("orphan")

    assert settlement.refunded == 25
    assert manager.ledger.get_balance(user_id) == 100
