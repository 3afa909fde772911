import os
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set environment BEFORE any app import
os.environ.setdefault("VJ_APP_ENV", "dev")
os.environ.setdefault("VJ_TRUSTED_HOSTS", "localhost,testserver")

ADMIN_USER_ID = "admin-user"


@pytest.fixture
def db(tmp_path: Path):
    """File-backed SQLite database with the full schema, one per test."""
    from backend.app.core.database import Database

    database = Database(f"sqlite:///{tmp_path / 'video_jobs.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def user_id() -> str:
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def fund(db):
    """Grant credits to a user: ``fund(user_id, amount)``."""
    from backend.app.services.ledger import LedgerStore

    ledger = LedgerStore(db)

    def _fund(user: str, amount: int) -> None:
        ledger.record_transaction(user, "grant", amount, note="test funding")

    return _fund


@pytest.fixture
def client(db, monkeypatch) -> TestClient:
    from backend.app.api.deps import get_db
    from backend.app.core.config import settings
    from backend.main import app

    monkeypatch.setattr(settings, "admin_user_ids", [ADMIN_USER_ID])
    monkeypatch.setattr(settings, "max_concurrent_jobs", 100)
    app.state.db = db
    app.dependency_overrides[get_db] = lambda: db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-User-Id": ADMIN_USER_ID}
