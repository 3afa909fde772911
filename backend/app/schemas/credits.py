from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    balance: int


class LedgerEntryResponse(BaseModel):
    model_config = {'from_attributes': True}

    id: str
    type: str
    amount: int
    job_id: str | None
    note: str | None
    created_at: int
    stripe_payment_id: str | None = None


class CreditHistoryResponse(BaseModel):
    items: list[LedgerEntryResponse]
    total: int
    limit: int
    offset: int


class GrantCreditsRequest(BaseModel):
    user_id: Annotated[str, Field(min_length=1, max_length=64)]
    amount: Annotated[int, Field(gt=0, le=1_000_000)]
    type: Literal["purchase", "grant"] = "grant"
    note: Annotated[str | None, Field(max_length=500)] = None
    idempotency_key: Annotated[str | None, Field(min_length=1, max_length=128)] = None
    stripe_payment_id: Annotated[str | None, Field(min_length=1, max_length=255)] = None


class GrantCreditsResponse(BaseModel):
    user_id: str
    balance: int
