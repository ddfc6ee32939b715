from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lending.api.v1.dependencies import get_db
from lending.api.v1.dependencies_auth import get_current_user, require_admin
from lending.db.models import Loan, LoanHistory, ReservationHistory, User, UserActionHistory
from lending.schemas.loan import LoanHistoryRead
from lending.schemas.maintenance import UserActionHistoryRead
from lending.schemas.reservation import ReservationHistoryRead

router = APIRouter(
    prefix="/api/v1/history",
    tags=["history"],
)


@router.get("/loans", response_model=List[LoanHistoryRead])
def loan_history(
    loan_id: Optional[int] = None,
    item_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    query = db.query(LoanHistory)
    if loan_id is not None:
        query = query.filter(LoanHistory.loan_id == loan_id)
    if item_id is not None:
        query = query.join(Loan, Loan.id == LoanHistory.loan_id).filter(Loan.item_id == item_id)
    return query.order_by(LoanHistory.date.desc(), LoanHistory.id.desc()).all()


@router.get("/reservations", response_model=List[ReservationHistoryRead])
def reservation_history(
    item_id: Optional[int] = None,
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    query = db.query(ReservationHistory)
    if item_id is not None:
        query = query.filter(ReservationHistory.item_id == item_id)
    if user_id is not None:
        query = query.filter(ReservationHistory.user_id == user_id)
    return query.order_by(ReservationHistory.date.desc(), ReservationHistory.id.desc()).all()


@router.get("/user-actions", response_model=List[UserActionHistoryRead])
def user_action_history(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return (
        db.query(UserActionHistory)
        .order_by(UserActionHistory.date.desc(), UserActionHistory.id.desc())
        .all()
    )
