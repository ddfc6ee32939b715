from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from lending.db.models import ReservationAction, ReservationStatus


class ReservationCreate(BaseModel):
    item_id: int
    user_id: Optional[int] = None  # por defecto, el usuario autenticado
    start_date: datetime
    end_date: datetime


class ReservationUpdate(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[ReservationStatus] = None


class ReservationRead(BaseModel):
    id: int
    item_id: int
    user_id: int
    start_date: datetime
    end_date: datetime
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ReservationHistoryRead(BaseModel):
    id: int
    reservation_id: Optional[int]
    item_id: int
    user_id: int
    action: ReservationAction
    date: datetime
    comment: Optional[str]

    class Config:
        from_attributes = True


class ExpirySweepRead(BaseModel):
    success: bool = True
    count: int
    expired_ids: list[int] = []
