"""Credit balance, history and admin grant routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from ...core.config import settings
from ...schemas.credits import (
    BalanceResponse,
    CreditHistoryResponse,
    GrantCreditsRequest,
    GrantCreditsResponse,
    LedgerEntryResponse,
)
from ...services.credit_rpc import CreditRpc
from ...services.ledger import LedgerStore
from ..deps import User, get_admin_user, get_credit_rpc, get_current_user, get_ledger_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    current_user: User = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    return BalanceResponse(balance=ledger.get_balance(current_user.id))


@router.get("/history", response_model=CreditHistoryResponse)
def get_history(
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    """Ledger entries for the caller, newest first."""
    limit = min(limit, settings.max_credit_history_page)
    entries = ledger.list_entries(current_user.id, limit=limit, offset=offset)
    return CreditHistoryResponse(
        items=[
            LedgerEntryResponse(
                id=entry.id,
                type=entry.type.value,
                amount=entry.amount,
                job_id=entry.job_id,
                note=entry.note,
                created_at=entry.created_at,
                stripe_payment_id=entry.stripe_payment_id,
            )
            for entry in entries
        ],
        total=ledger.count_entries(current_user.id),
        limit=limit,
        offset=offset,
    )


@router.post("/grant", response_model=GrantCreditsResponse)
def grant_credits(
    request: GrantCreditsRequest,
    admin: User = Depends(get_admin_user),
    credits: CreditRpc = Depends(get_credit_rpc),
):
    credits.add_credits(
        request.user_id,
        request.amount,
        type=request.type,
        note=request.note or f"Granted by {admin.id}",
        idempotency_key=request.idempotency_key,
        stripe_payment_id=request.stripe_payment_id,
    )
    logger.info(
        "Credits granted",
        extra={"data": {"admin_id": admin.id, "user_id": request.user_id, "amount": request.amount}},
    )
    return GrantCreditsResponse(user_id=request.user_id, balance=credits.get_credit_balance(request.user_id))
