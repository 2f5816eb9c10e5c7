from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CreditBalance(BaseModel):
    free: int
    paid: int
    total: int


class ReserveResult(BaseModel):
    ok: bool
    free_after: int = 0
    paid_after: int = 0
    error_kind: Optional[str] = None


class CreditTransactionOut(BaseModel):
    id: int
    amount: int
    pool: str
    reason: str
    reference_id: Optional[str] = None
    balance_after: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreditHistory(BaseModel):
    transactions: List[CreditTransactionOut]
    has_more: bool
    limit: int
    offset: int
