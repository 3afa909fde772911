from dataclasses import dataclass
from typing import Annotated, Generator

from fastapi import Depends, Header, HTTPException, Request, status

from ..core.config import settings
from ..core.database import Database
from ..services.credit_rpc import CreditRpc
from ..services.jobs import JobStateMachine, JobStore
from ..services.ledger import LedgerStore
from ..services.reservations import ReservationManager
from ..services.step_retry import StepRetryController


@dataclass(frozen=True)
class User:
    id: str
    is_admin: bool = False


def get_db(request: Request) -> Generator[Database, None, None]:
    """Dependency returning the process-wide database owned by the app lifespan."""
    db: Database | None = getattr(request.app.state, "db", None)
    if db is None:
        db = Database()
        request.app.state.db = db
    yield db

def get_ledger_store(db: Database = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db=db)

def get_reservation_manager(db: Database = Depends(get_db)) -> ReservationManager:
    return ReservationManager(db=db)

def get_credit_rpc(db: Database = Depends(get_db)) -> CreditRpc:
    return CreditRpc(db=db)

def get_job_store(db: Database = Depends(get_db)) -> JobStore:
    return JobStore(db=db)

def get_state_machine(db: Database = Depends(get_db)) -> JobStateMachine:
    return JobStateMachine(db=db)

def get_step_retry_controller(db: Database = Depends(get_db)) -> StepRetryController:
    return StepRetryController(db=db)

async def get_current_user(
    x_user_id: Annotated[str | None, Header(max_length=64)] = None,
) -> User:
    """Caller identity as forwarded by the auth gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    user_id = x_user_id.strip()
    return User(id=user_id, is_admin=user_id in settings.admin_user_ids)

async def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user
