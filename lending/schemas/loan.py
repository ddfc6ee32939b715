from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel

from lending.db.models import LoanHistoryAction, LoanStatus


class LoanCreate(BaseModel):
    item_id: int
    borrower_id: int
    borrowed_at: datetime
    due_at: datetime
    notes: Optional[str] = None
    contexts: List[str] = []


class LoanStatusUpdate(BaseModel):
    status: LoanStatus


class AvailabilityCheck(BaseModel):
    item_id: int
    borrowed_at: datetime
    due_at: datetime


class LoanRead(BaseModel):
    id: int
    item_id: int
    borrower_id: int
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime]
    lost_at: Optional[datetime] = None
    status: LoanStatus
    # Estado efectivo calculado al leer (el guardado no siempre es fiable)
    computed_status: Optional[LoanStatus] = None
    notes: Optional[str]
    contexts: List[str] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LoanHistoryRead(BaseModel):
    id: int
    loan_id: int
    action: LoanHistoryAction
    status: LoanStatus
    date: datetime
    user_id: int
    performed_by_id: Optional[int]
    comment: Optional[str]

    class Config:
        from_attributes = True


class LoanWithHistoryRead(LoanRead):
    history: List[LoanHistoryRead] = []


class LoanReturnRead(BaseModel):
    loan: LoanRead
    item_status: Optional[str] = None
    warnings: List[str] = []


class OverdueCountRead(BaseModel):
    count: int
