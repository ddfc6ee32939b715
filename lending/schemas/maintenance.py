from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from lending.schemas.conflict import ConflictRecordRead


class StatusCorrectionRead(BaseModel):
    id: int
    name: str
    old_status: str
    new_status: str


class ReconciliationStats(BaseModel):
    fixed_borrowed: int
    fixed_available: int
    fixed_pending: int
    total_fixed: int


class ReconciliationRead(BaseModel):
    success: bool = True
    stats: ReconciliationStats
    fixed_borrowed: List[StatusCorrectionRead] = []
    fixed_available: List[StatusCorrectionRead] = []
    fixed_pending: List[StatusCorrectionRead] = []


class DoubleBookingRead(BaseModel):
    item_id: int
    first: ConflictRecordRead
    second: ConflictRecordRead


class DuplicateCleanupRead(BaseModel):
    closed_loan_ids: List[int] = []
    item_ids: List[int] = []


class UserActionHistoryRead(BaseModel):
    id: int
    user_id: Optional[int]
    action: str
    target_type: str
    target_id: int
    date: datetime
    comment: Optional[str]

    class Config:
        from_attributes = True
