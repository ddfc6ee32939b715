from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from lending.api.v1.dependencies import get_db
from lending.api.v1.dependencies_auth import get_current_actor, get_current_user, require_admin
from lending.core.logging import get_logger
from lending.db.models import Loan, LoanStatus, User
from lending.schemas.conflict import AvailabilityRead, ConflictRecordRead
from lending.schemas.loan import (
    AvailabilityCheck,
    LoanCreate,
    LoanRead,
    LoanReturnRead,
    LoanStatusUpdate,
    LoanWithHistoryRead,
    OverdueCountRead,
)
from lending.services.availability import compute_loan_status
from lending.services.identity import Actor
from lending.services.loan_service import (
    change_loan_status,
    check_availability,
    count_overdue_loans,
    create_loan,
    get_loan,
    list_loans,
    mark_loan_lost,
    return_loan,
)

logger = get_logger("api.loans")


router = APIRouter(
    prefix="/api/v1/loans",
    tags=["loans"],
)


def _to_read(loan: Loan, schema=LoanRead):
    read = schema.model_validate(loan)
    read.computed_status = compute_loan_status(loan)
    return read


# ---- Crear préstamo ----
@router.post("/", response_model=LoanRead, status_code=status.HTTP_201_CREATED)
def create_loan_endpoint(
    payload: LoanCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    loan = create_loan(
        db,
        item_id=payload.item_id,
        borrower_id=payload.borrower_id,
        borrowed_at=payload.borrowed_at,
        due_at=payload.due_at,
        notes=payload.notes,
        contexts=payload.contexts,
        actor=actor,
    )
    return _to_read(loan)


# ---- Listar préstamos con estado efectivo ----
@router.get("/", response_model=List[LoanRead])
def list_loans_endpoint(
    item_id: Optional[int] = None,
    borrower_id: Optional[int] = None,
    status_filter: Optional[LoanStatus] = Query(None, alias="status"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    loans = list_loans(db, item_id, borrower_id, status_filter, skip, limit)
    return [_to_read(loan) for loan in loans]


# ---- Consulta de disponibilidad sin escribir ----
@router.post("/check-availability", response_model=AvailabilityRead)
def check_availability_endpoint(
    payload: AvailabilityCheck,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    conflicts = check_availability(db, payload.item_id, payload.borrowed_at, payload.due_at)
    return AvailabilityRead(
        available=not conflicts,
        conflicting_loans=[ConflictRecordRead.model_validate(c) for c in conflicts.loans],
        conflicting_reservations=[
            ConflictRecordRead.model_validate(c) for c in conflicts.reservations
        ],
    )


# ---- Contador de retrasos ---- (importante: debe ir antes de loan_id)
@router.get("/overdue/count", response_model=OverdueCountRead)
def overdue_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return OverdueCountRead(count=count_overdue_loans(db))


# ---- Detalle de un préstamo ----
@router.get("/{loan_id}", response_model=LoanWithHistoryRead)
def get_loan_endpoint(
    loan_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _to_read(get_loan(db, loan_id), LoanWithHistoryRead)


# ---- Devolución ----
@router.post("/{loan_id}/return", response_model=LoanReturnRead)
def return_loan_endpoint(
    loan_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    result = return_loan(db, loan_id, actor=actor)
    return LoanReturnRead(
        loan=_to_read(result.loan),
        item_status=result.item_status.value if result.item_status else None,
        warnings=result.warnings,
    )


# ---- Declarar pérdida ----
@router.post("/{loan_id}/lost", response_model=LoanRead)
def mark_loan_lost_endpoint(
    loan_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return _to_read(mark_loan_lost(db, loan_id, actor=actor))


# ---- Cambio de estado (admin) ----
@router.put("/{loan_id}", response_model=LoanRead)
def change_loan_status_endpoint(
    loan_id: int,
    payload: LoanStatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    loan = change_loan_status(db, loan_id, payload.status, actor=Actor.from_user(current_user))
    return _to_read(loan)
