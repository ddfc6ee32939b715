from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lending.api.v1.dependencies import get_db
from lending.api.v1.dependencies_auth import require_admin
from lending.core.logging import get_logger
from lending.db.models import User
from lending.schemas.maintenance import (
    DoubleBookingRead,
    DuplicateCleanupRead,
    ReconciliationRead,
)
from lending.services.identity import Actor
from lending.services.maintenance_service import (
    close_duplicate_loans,
    find_double_bookings,
    reconcile_item_statuses,
)

logger = get_logger("api.maintenance")

router = APIRouter(
    prefix="/api/v1/maintenance",
    tags=["maintenance"],
)


@router.post("/fix-item-status", response_model=ReconciliationRead)
def fix_item_status(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    Barrido de reconciliación (solo ADMIN):
    - Items BORROWED sin préstamo en curso -> estado derivado.
    - Items AVAILABLE con préstamo en curso -> BORROWED.
    - Items PENDING/RESERVED -> estado derivado.
    """
    report = reconcile_item_statuses(db, actor=Actor.from_user(current_user))

    logger.info(
        "Item status reconciliation executed",
        extra={
            "operation": "item_status_reconcile_job",
            "resource": "item",
            "status_code": 200,
            "run_by_user_id": current_user.id,
            **report.stats,
        },
    )
    return ReconciliationRead(
        stats=report.stats,
        fixed_borrowed=[c.to_dict() for c in report.fixed_borrowed],
        fixed_available=[c.to_dict() for c in report.fixed_available],
        fixed_pending=[c.to_dict() for c in report.fixed_pending],
    )


@router.get("/double-bookings", response_model=List[DoubleBookingRead])
def double_bookings(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return [booking.to_dict() for booking in find_double_bookings(db)]


@router.post("/close-duplicate-loans", response_model=DuplicateCleanupRead)
def close_duplicate_loans_endpoint(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    result = close_duplicate_loans(db, actor=Actor.from_user(current_user))
    return DuplicateCleanupRead(
        closed_loan_ids=result.closed_loan_ids,
        item_ids=result.item_ids,
    )
