from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from lending.core.errors import InvalidRequestError, LendingError, NotFoundError
from lending.core.logging import get_logger
from lending.db.models import (
    Item,
    ItemCategory,
    ItemStatus,
    Loan,
    Reservation,
    ReservationStatus,
    UserActionHistory,
)
from lending.services.availability import as_utc, derive_item_status, resolve_item_status, utcnow
from lending.services.conflicts import lock_item
from lending.services.identity import Actor

logger = get_logger("services.items")

ITEM_STATUS_CHANGE_ACTION = "ITEM_STATUS_CHANGE"


def get_item(db: Session, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if item is None:
        raise NotFoundError("Item", item_id)
    return item


def list_items(db: Session, category: Optional[ItemCategory] = None) -> List[Item]:
    query = db.query(Item)
    if category is not None:
        query = query.filter(Item.category == category)
    return query.order_by(Item.id).all()


def create_item(
    db: Session,
    name: str,
    category: ItemCategory = ItemCategory.EQUIPMENT,
    reservation_status: ItemStatus = ItemStatus.AVAILABLE,
) -> Item:
    if not name or not name.strip():
        raise InvalidRequestError("Item name is required")

    item = Item(
        name=name.strip(),
        category=category,
        reservation_status=reservation_status,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def _item_loans_and_reservations(db: Session, item: Item):
    loans = db.query(Loan).filter(Loan.item_id == item.id).all()
    reservations = (
        db.query(Reservation)
        .filter(
            Reservation.item_id == item.id,
            Reservation.status == ReservationStatus.CONFIRMED,
        )
        .all()
    )
    return loans, reservations


def item_derived_status(db: Session, item: Item, now: Optional[datetime] = None) -> ItemStatus:
    """Estado derivado en el momento de la lectura (nunca se confía en el guardado)."""
    loans, reservations = _item_loans_and_reservations(db, item)
    return resolve_item_status(item, loans, reservations, now)


def refresh_item_status(
    db: Session,
    item: Item,
    now: Optional[datetime] = None,
) -> Tuple[ItemStatus, ItemStatus]:
    """
    Alinea el estado guardado con el derivado. No hace commit.
    Devuelve (estado_anterior, estado_nuevo).
    """
    old_status = item.reservation_status
    new_status = item_derived_status(db, item, now)
    if new_status != old_status:
        item.reservation_status = new_status
    return old_status, new_status


def update_item(
    db: Session,
    item_id: int,
    name: Optional[str] = None,
    category: Optional[ItemCategory] = None,
    reservation_status: Optional[ItemStatus] = None,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> Item:
    """
    Edición administrativa de un item.

    El único estado que se fija a mano es OUT_OF_ORDER. Pedir cualquier
    otro (p. ej. AVAILABLE para quitar la marca) vuelve a derivar el
    estado de los préstamos y reservas del item. Cada cambio de estado
    deja una fila en UserActionHistory.
    """
    now = as_utc(now) or utcnow()

    try:
        item = lock_item(db, item_id)

        if name is not None:
            if not name.strip():
                raise InvalidRequestError("Item name is required", details={"name": True})
            item.name = name.strip()
        if category is not None:
            item.category = category

        old_status = item.reservation_status
        new_status = old_status
        if reservation_status == ItemStatus.OUT_OF_ORDER:
            new_status = ItemStatus.OUT_OF_ORDER
        elif reservation_status is not None:
            loans, reservations = _item_loans_and_reservations(db, item)
            new_status = derive_item_status(loans, reservations, now)

        if new_status != old_status:
            item.reservation_status = new_status
            db.add(
                UserActionHistory(
                    user_id=actor.user_id if actor else None,
                    action=ITEM_STATUS_CHANGE_ACTION,
                    target_type="item",
                    target_id=item.id,
                    date=now,
                    comment=f"Item status changed: {old_status.value} -> {new_status.value}",
                )
            )
        db.commit()
    except LendingError:
        db.rollback()
        raise

    db.refresh(item)
    logger.info(
        "item_updated",
        extra={
            "operation": "item_update",
            "resource": "item",
            "item_id": item.id,
            "old_status": old_status,
            "new_status": new_status,
        },
    )
    return item
