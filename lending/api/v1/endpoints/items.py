from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from lending.api.v1.dependencies import get_db
from lending.api.v1.dependencies_auth import get_current_user, require_admin
from lending.core.logging import get_logger
from lending.db.models import Item, ItemCategory, User
from lending.schemas.item import ItemCreate, ItemRead, ItemUpdate
from lending.services.identity import Actor
from lending.services.item_service import (
    create_item,
    get_item,
    item_derived_status,
    list_items,
    update_item,
)

logger = get_logger("api.items")

router = APIRouter(
    prefix="/api/v1/items",
    tags=["items"],
)


def _to_read(db: Session, item: Item) -> ItemRead:
    return ItemRead(
        id=item.id,
        name=item.name,
        category=item.category,
        stored_status=item.reservation_status,
        derived_status=item_derived_status(db, item),
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


@router.get("/", response_model=List[ItemRead])
def list_items_endpoint(
    category: Optional[ItemCategory] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return [_to_read(db, item) for item in list_items(db, category)]


@router.post("/", response_model=ItemRead, status_code=status.HTTP_201_CREATED)
def create_item_endpoint(
    payload: ItemCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    item = create_item(db, payload.name, payload.category, payload.reservation_status)

    logger.info(
        "item_created",
        extra={
            "operation": "item_create",
            "resource": "item",
            "item_id": item.id,
            "status_code": 201,
        },
    )
    return _to_read(db, item)


@router.get("/{item_id}", response_model=ItemRead)
def get_item_endpoint(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _to_read(db, get_item(db, item_id))


@router.put("/{item_id}", response_model=ItemRead)
def update_item_endpoint(
    item_id: int,
    payload: ItemUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    item = update_item(
        db,
        item_id,
        name=payload.name,
        category=payload.category,
        reservation_status=payload.reservation_status,
        actor=Actor.from_user(current_user),
    )
    return _to_read(db, item)
