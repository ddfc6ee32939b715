from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from lending.core.errors import (
    AuthorizationError,
    ConflictError,
    InvalidRequestError,
    LendingError,
    NotFoundError,
)
from lending.core.logging import get_logger
from lending.db.models import (
    Reservation,
    ReservationAction,
    ReservationHistory,
    ReservationStatus,
)
from lending.services.availability import as_utc, overlaps, require_period, utcnow
from lending.services.conflicts import check_reservation_period, lock_item
from lending.services.identity import Actor, get_user

logger = get_logger("services.reservations")

DATE_FORMAT = "%d/%m/%Y"


@dataclass
class ExpirySweepResult:
    expired_ids: List[int] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.expired_ids)


def _period_label(start: datetime, end: datetime) -> str:
    return f"{as_utc(start).strftime(DATE_FORMAT)} - {as_utc(end).strftime(DATE_FORMAT)}"


def _describe(reservation: Reservation) -> str:
    item_name = reservation.item.name if reservation.item else "Unknown item"
    holder = reservation.user.full_name if reservation.user else ""
    return f"{item_name} for {holder}"


def add_reservation_history(
    db: Session,
    reservation: Reservation,
    action: ReservationAction,
    user_id: int,
    date: datetime,
    comment: Optional[str] = None,
) -> ReservationHistory:
    history = ReservationHistory(
        reservation_id=reservation.id,
        item_id=reservation.item_id,
        user_id=user_id,
        action=action,
        date=date,
        comment=comment,
    )
    db.add(history)
    return history


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError("Reservation", reservation_id)
    return reservation


def list_reservations(
    db: Session,
    item_id: Optional[int] = None,
    user_id: Optional[int] = None,
    status: Optional[ReservationStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Reservation]:
    if start is not None and end is not None:
        start, end = require_period(start, end, "start_date", "end_date")

    query = db.query(Reservation)
    if item_id is not None:
        query = query.filter(Reservation.item_id == item_id)
    if user_id is not None:
        query = query.filter(Reservation.user_id == user_id)
    if status is not None:
        query = query.filter(Reservation.status == status)

    reservations = query.order_by(Reservation.start_date).all()
    if start is None and end is None:
        return reservations

    # Ventana abierta por un lado: se filtra solo por el extremo conocido
    window_start = as_utc(start) or datetime.min.replace(tzinfo=timezone.utc)
    window_end = as_utc(end) or datetime.max.replace(tzinfo=timezone.utc)
    return [
        r for r in reservations
        if overlaps(r.start_date, r.end_date, window_start, window_end)
    ]


def create_reservation(
    db: Session,
    item_id: Optional[int],
    user_id: Optional[int],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Crea una reserva CONFIRMED si no choca con otra reserva CONFIRMED.

    El estado guardado del item no se toca: la reserva solo se refleja
    a través del estado derivado.
    """
    if item_id is None or user_id is None:
        raise InvalidRequestError(
            "Item and user are required",
            details={"item_id": item_id is None, "user_id": user_id is None},
        )
    start, end = require_period(start_date, end_date, "start_date", "end_date")
    now = as_utc(now) or utcnow()

    try:
        item = lock_item(db, item_id)
        user = get_user(db, user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        conflicts = check_reservation_period(db, item.id, start, end)
        if not conflicts:
            # Verificación final justo antes de escribir
            conflicts = check_reservation_period(db, item.id, start, end)
        if conflicts:
            logger.info(
                "reservation_conflict",
                extra={
                    "operation": "reservation_create",
                    "resource": "reservation",
                    "item_id": item.id,
                    "conflicting_reservation_ids": [c.id for c in conflicts],
                },
            )
            raise ConflictError(
                "Item is already reserved for the requested period",
                conflicting_reservations=conflicts,
            )

        reservation = Reservation(
            item_id=item.id,
            user_id=user.id,
            start_date=start,
            end_date=end,
            status=ReservationStatus.CONFIRMED,
        )
        db.add(reservation)
        db.flush()

        add_reservation_history(
            db,
            reservation,
            ReservationAction.RESERVE,
            user_id=user.id,
            date=now,
            comment=f"New reservation - {item.name} for {user.full_name}, {_period_label(start, end)}",
        )
        db.commit()
    except LendingError:
        db.rollback()
        raise

    db.refresh(reservation)
    logger.info(
        "reservation_created",
        extra={
            "operation": "reservation_create",
            "resource": "reservation",
            "reservation_id": reservation.id,
            "item_id": reservation.item_id,
        },
    )
    return reservation


def modify_reservation(
    db: Session,
    reservation_id: int,
    actor_id: Optional[int],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    status: Optional[ReservationStatus] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Cambia fechas y/o estado de una reserva.

    Solo el dueño o un administrador. Los intentos denegados y los que
    fallan por conflicto también quedan en el historial.
    """
    if actor_id is None:
        raise InvalidRequestError("Acting user id is required to modify a reservation")
    now = as_utc(now) or utcnow()

    reservation = get_reservation(db, reservation_id)
    actor_user = get_user(db, actor_id)
    if actor_user is None:
        raise NotFoundError("User", actor_id)
    actor = Actor.from_user(actor_user)

    old_start, old_end = as_utc(reservation.start_date), as_utc(reservation.end_date)
    new_start, new_end = require_period(
        start_date if start_date is not None else old_start,
        end_date if end_date is not None else old_end,
        "start_date",
        "end_date",
    )
    change = f"{_period_label(old_start, old_end)} -> {_period_label(new_start, new_end)}"

    if not (actor.is_admin or actor.user_id == reservation.user_id):
        add_reservation_history(
            db,
            reservation,
            ReservationAction.UNAUTHORIZED_MODIFY,
            user_id=actor.user_id,
            date=now,
            comment=f"Unauthorized modification attempt by {actor_user.full_name} - {_describe(reservation)}, {change}",
        )
        db.commit()
        logger.warning(
            "reservation_unauthorized_modify",
            extra={
                "operation": "reservation_modify",
                "resource": "reservation",
                "reservation_id": reservation.id,
                "actor_id": actor.user_id,
            },
        )
        raise AuthorizationError(
            "You are not allowed to modify this reservation",
            details={"reservation_id": reservation.id, "actor_id": actor.user_id},
        )

    new_status = status or reservation.status
    dates_changed = (new_start, new_end) != (old_start, old_end)
    reconfirmed = (
        new_status == ReservationStatus.CONFIRMED
        and reservation.status != ReservationStatus.CONFIRMED
    )

    try:
        lock_item(db, reservation.item_id)
        if new_status == ReservationStatus.CONFIRMED and (dates_changed or reconfirmed):
            conflicts = check_reservation_period(
                db, reservation.item_id, new_start, new_end, exclude_reservation_id=reservation.id
            )
            if not conflicts:
                conflicts = check_reservation_period(
                    db, reservation.item_id, new_start, new_end, exclude_reservation_id=reservation.id
                )
            if conflicts:
                db.rollback()
                add_reservation_history(
                    db,
                    reservation,
                    ReservationAction.MODIFY_FAILED,
                    user_id=actor.user_id,
                    date=now,
                    comment=f"Failed modification by {actor_user.full_name} (conflict) - {_describe(reservation)}, {change}",
                )
                db.commit()
                logger.info(
                    "reservation_modify_conflict",
                    extra={
                        "operation": "reservation_modify",
                        "resource": "reservation",
                        "reservation_id": reservation.id,
                        "conflicting_reservation_ids": [c.id for c in conflicts],
                    },
                )
                raise ConflictError(
                    "Item is already reserved for the requested period",
                    conflicting_reservations=conflicts,
                )

        old_status = reservation.status
        reservation.start_date = new_start
        reservation.end_date = new_end
        reservation.status = new_status

        comment = f"Reservation modified by {actor_user.full_name} - {_describe(reservation)}"
        if dates_changed:
            comment = f"{comment}, {change}"
        add_reservation_history(
            db,
            reservation,
            ReservationAction.MODIFY,
            user_id=actor.user_id,
            date=now,
            comment=comment,
        )
        db.commit()
    except ConflictError:
        raise
    except LendingError:
        db.rollback()
        raise

    db.refresh(reservation)
    logger.info(
        "reservation_modified",
        extra={
            "operation": "reservation_modify",
            "resource": "reservation",
            "reservation_id": reservation.id,
            "old_status": old_status,
            "new_status": reservation.status,
            "dates_changed": dates_changed,
        },
    )
    return reservation


def cancel_reservation(
    db: Session,
    reservation_id: int,
    cancelled_by_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """
    Cancela (borrado lógico) una reserva CONFIRMED.

    En el historial queda quien canceló si es un usuario conocido;
    si no, el dueño de la reserva.
    """
    now = as_utc(now) or utcnow()

    reservation = get_reservation(db, reservation_id)
    if reservation.status != ReservationStatus.CONFIRMED:
        raise InvalidRequestError(
            "Only confirmed reservations can be cancelled",
            details={"reservation_id": reservation.id, "status": reservation.status.value},
        )

    canceller = get_user(db, cancelled_by_id)
    if cancelled_by_id is not None and canceller is None:
        logger.warning(
            "reservation_cancel_unknown_user",
            extra={
                "operation": "reservation_cancel",
                "resource": "reservation",
                "reservation_id": reservation.id,
                "cancelled_by_id": cancelled_by_id,
            },
        )

    if canceller is None or canceller.id == reservation.user_id:
        history_user_id = reservation.user_id
        comment = "Reservation cancelled by its owner"
    else:
        history_user_id = canceller.id
        comment = f"Reservation cancelled by {canceller.full_name}"

    reservation.status = ReservationStatus.CANCELLED
    add_reservation_history(
        db,
        reservation,
        ReservationAction.CANCEL,
        user_id=history_user_id,
        date=now,
        comment=f"{comment} - {_describe(reservation)}, "
        f"{_period_label(reservation.start_date, reservation.end_date)}",
    )
    db.commit()
    db.refresh(reservation)

    logger.info(
        "reservation_cancelled",
        extra={
            "operation": "reservation_cancel",
            "resource": "reservation",
            "reservation_id": reservation.id,
            "item_id": reservation.item_id,
            "cancelled_by_id": history_user_id,
        },
    )
    return reservation


def expire_reservations(db: Session, now: Optional[datetime] = None) -> ExpirySweepResult:
    """
    Marca EXPIRED todas las reservas CONFIRMED cuya fecha de fin ya pasó.

    Idempotente: una segunda pasada no encuentra nada que cambiar.
    Pensada para ser llamada por un job (cron, startup, endpoint admin).
    """
    now = as_utc(now) or utcnow()

    expired = (
        db.query(Reservation)
        .filter(
            Reservation.status == ReservationStatus.CONFIRMED,
            Reservation.end_date < now,
        )
        .with_for_update()
        .all()
    )

    result = ExpirySweepResult()
    for reservation in expired:
        reservation.status = ReservationStatus.EXPIRED
        add_reservation_history(
            db,
            reservation,
            ReservationAction.EXPIRED,
            user_id=reservation.user_id,
            date=now,
            comment=f"Reservation expired automatically - {_describe(reservation)}, "
            f"{_period_label(reservation.start_date, reservation.end_date)}",
        )
        result.expired_ids.append(reservation.id)
    db.commit()

    logger.info(
        "reservations_expired",
        extra={
            "operation": "reservation_expire",
            "resource": "reservation",
            "updated_count": result.count,
        },
    )
    return result
