from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from lending.api.v1.dependencies import get_db
from lending.api.v1.dependencies_auth import get_current_user, require_admin
from lending.core.logging import get_logger
from lending.db.models import ReservationStatus, User
from lending.schemas.reservation import (
    ExpirySweepRead,
    ReservationCreate,
    ReservationRead,
    ReservationUpdate,
)
from lending.services.reservation_service import (
    cancel_reservation,
    create_reservation,
    expire_reservations,
    get_reservation,
    list_reservations,
    modify_reservation,
)

logger = get_logger("api.reservations")

router = APIRouter(
    prefix="/api/v1/reservations",
    tags=["reservations"],
)


@router.get("/", response_model=List[ReservationRead])
def list_reservations_endpoint(
    item_id: Optional[int] = None,
    user_id: Optional[int] = None,
    status_filter: Optional[ReservationStatus] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return list_reservations(db, item_id, user_id, status_filter, start_date, end_date)


@router.post("/", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
def create_reservation_endpoint(
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    user_id = payload.user_id or current_user.id

    # Solo un admin puede reservar en nombre de otro usuario
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot reserve on behalf of another user",
        )

    return create_reservation(
        db,
        item_id=payload.item_id,
        user_id=user_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
    )


# ---- Barrido de reservas vencidas (job manual, solo ADMIN) ----
@router.post("/cleanup", response_model=ExpirySweepRead)
def cleanup_expired_reservations(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    result = expire_reservations(db)

    logger.info(
        "Reservation expiry job executed",
        extra={
            "operation": "reservation_expire_job",
            "resource": "reservation",
            "updated_count": result.count,
            "status_code": 200,
            "run_by_user_id": current_user.id,
        },
    )
    return ExpirySweepRead(count=result.count, expired_ids=result.expired_ids)


@router.get("/{reservation_id}", response_model=ReservationRead)
def get_reservation_endpoint(
    reservation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return get_reservation(db, reservation_id)


@router.put("/{reservation_id}", response_model=ReservationRead)
def update_reservation_endpoint(
    reservation_id: int,
    payload: ReservationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return modify_reservation(
        db,
        reservation_id,
        actor_id=current_user.id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        status=payload.status,
    )


@router.delete("/{reservation_id}", response_model=ReservationRead)
def cancel_reservation_endpoint(
    reservation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return cancel_reservation(db, reservation_id, cancelled_by_id=current_user.id)
