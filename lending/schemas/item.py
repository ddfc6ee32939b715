from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from lending.db.models import ItemCategory, ItemStatus


class ItemCreate(BaseModel):
    name: str
    category: ItemCategory = ItemCategory.EQUIPMENT
    reservation_status: ItemStatus = ItemStatus.AVAILABLE


class ItemRead(BaseModel):
    id: int
    name: str
    category: ItemCategory
    # Valor guardado (caché) y valor derivado en el momento de la lectura
    stored_status: ItemStatus
    derived_status: ItemStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ItemUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[ItemCategory] = None
    # Solo OUT_OF_ORDER se guarda tal cual; cualquier otro valor re-deriva el estado
    reservation_status: Optional[ItemStatus] = None
