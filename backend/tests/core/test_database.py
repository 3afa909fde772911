import pytest
from sqlalchemy import select

from backend.app.core.database import Database
from backend.app.db.models import DbCreditLedger


def test_rejects_unsupported_backends() -> None:
    with pytest.raises(RuntimeError, match="Unsupported database"):
        Database("mysql://localhost/jobs")


def test_sqlite_dialect_detected(db) -> None:
    assert db.dialect == "sqlite"


def test_session_commits_on_success(db) -> None:
    with db.session() as session:
        session.add(DbCreditLedger(id="e1", user_id="u1", type="grant", amount=5, created_at=1))

    with db.session() as session:
        assert session.scalar(select(DbCreditLedger.amount).where(DbCreditLedger.id == "e1")) == 5


def test_session_rolls_back_on_error(db) -> None:
    with pytest.raises(ValueError):
        with db.session() as session:
            session.add(DbCreditLedger(id="e2", user_id="u1", type="grant", amount=5, created_at=1))
            session.flush()
            raise ValueError("abort")

    with db.session() as session:
        assert session.get(DbCreditLedger, "e2") is None


def test_lock_key_runs_inside_transaction(db) -> None:
    with db.session() as session:
        db.lock_key(session, "credits", "u1")
        assert session.in_transaction()


def test_insert_supports_on_conflict_do_nothing(db) -> None:
    values = dict(id="e3", user_id="u1", type="grant", amount=1, idempotency_key="k", created_at=1)
    with db.session() as session:
        session.execute(db.insert(DbCreditLedger).values(**values))
        again = session.execute(
            db.insert(DbCreditLedger)
            .values(**{**values, "id": "e4"})
            .on_conflict_do_nothing(index_elements=[DbCreditLedger.idempotency_key])
        )
        assert again.rowcount == 0
