from datetime import datetime
from typing import List

from pydantic import BaseModel


class ConflictRecordRead(BaseModel):
    kind: str
    id: int
    start: datetime
    end: datetime
    holder_name: str

    class Config:
        from_attributes = True


class AvailabilityRead(BaseModel):
    available: bool
    conflicting_loans: List[ConflictRecordRead] = []
    conflicting_reservations: List[ConflictRecordRead] = []
