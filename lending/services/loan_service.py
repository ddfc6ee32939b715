from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lending.core.errors import (
    ConflictError,
    InconsistencyWarning,
    InvalidRequestError,
    LendingError,
    NotFoundError,
)
from lending.core.logging import get_logger
from lending.db.models import (
    ItemStatus,
    Loan,
    LoanContext,
    LoanHistory,
    LoanHistoryAction,
    LoanStatus,
)
from lending.services.availability import as_utc, require_period, utcnow
from lending.services.conflicts import LoanConflicts, check_loan_period, lock_item
from lending.services.identity import Actor, get_user
from lending.services.item_service import get_item, refresh_item_status

logger = get_logger("services.loans")

_ALLOWED_CONTEXTS = {c.value for c in LoanContext}


@dataclass
class LoanReturnResult:
    loan: Loan
    item_status: Optional[ItemStatus] = None
    warnings: List[str] = field(default_factory=list)


def normalize_contexts(raw: Optional[Iterable]) -> List[str]:
    """Limpia las etiquetas de contexto: trim, mayúsculas, solo las conocidas."""
    if not raw:
        return []
    contexts: List[str] = []
    for value in raw:
        if not value:
            continue
        tag = str(value).strip().upper()
        if tag in _ALLOWED_CONTEXTS and tag not in contexts:
            contexts.append(tag)
    return contexts


def add_loan_history(
    db: Session,
    loan: Loan,
    action: LoanHistoryAction,
    performed_by_id: Optional[int],
    date: datetime,
    comment: Optional[str] = None,
) -> LoanHistory:
    history = LoanHistory(
        loan_id=loan.id,
        action=action,
        status=loan.status,
        date=date,
        user_id=loan.borrower_id,
        performed_by_id=performed_by_id or loan.borrower_id,
        comment=comment,
    )
    db.add(history)
    return history


def get_loan(db: Session, loan_id: int) -> Loan:
    loan = db.get(Loan, loan_id)
    if loan is None:
        raise NotFoundError("Loan", loan_id)
    return loan


def list_loans(
    db: Session,
    item_id: Optional[int] = None,
    borrower_id: Optional[int] = None,
    status: Optional[LoanStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Loan]:
    query = db.query(Loan)
    if item_id is not None:
        query = query.filter(Loan.item_id == item_id)
    if borrower_id is not None:
        query = query.filter(Loan.borrower_id == borrower_id)
    if status is not None:
        query = query.filter(Loan.status == status)
    return query.order_by(Loan.borrowed_at.desc()).offset(skip).limit(limit).all()


def count_overdue_loans(db: Session, now: Optional[datetime] = None) -> int:
    now = as_utc(now) or utcnow()
    return (
        db.query(func.count(Loan.id))
        .filter(Loan.returned_at.is_(None), Loan.due_at < now)
        .scalar()
        or 0
    )


def check_availability(
    db: Session,
    item_id: int,
    borrowed_at: Optional[datetime],
    due_at: Optional[datetime],
) -> LoanConflicts:
    """Consulta de conflictos para un préstamo sin escribir nada."""
    start, end = require_period(borrowed_at, due_at, "borrowed_at", "due_at")
    get_item(db, item_id)
    return check_loan_period(db, item_id, start, end)


def _raise_loan_conflict(item_id: int, conflicts: LoanConflicts, stage: str):
    logger.info(
        "loan_conflict",
        extra={
            "operation": "loan_create",
            "resource": "loan",
            "item_id": item_id,
            "stage": stage,
            "conflicting_loan_ids": [c.id for c in conflicts.loans],
            "conflicting_reservation_ids": [c.id for c in conflicts.reservations],
        },
    )
    if conflicts.loans:
        message = "Item is already borrowed or scheduled for the requested period"
    else:
        message = "Item is already reserved for the requested period"
    raise ConflictError(
        message,
        conflicting_loans=conflicts.loans,
        conflicting_reservations=conflicts.reservations,
    )


def create_loan(
    db: Session,
    item_id: Optional[int],
    borrower_id: Optional[int],
    borrowed_at: Optional[datetime],
    due_at: Optional[datetime],
    notes: Optional[str] = None,
    contexts: Optional[Iterable] = None,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> Loan:
    """
    Crea un préstamo si el periodo está libre.

    - Bloquea el item y consulta conflictos (préstamos abiertos + reservas).
    - Repite la consulta justo antes de insertar, dentro de la misma transacción.
    - Inserta el préstamo (ACTIVE o SCHEDULED), su historial y marca el item BORROWED.
    """
    if item_id is None or borrower_id is None:
        raise InvalidRequestError(
            "Item and borrower are required",
            details={"item_id": item_id is None, "borrower_id": borrower_id is None},
        )
    start, end = require_period(borrowed_at, due_at, "borrowed_at", "due_at")
    now = as_utc(now) or utcnow()

    try:
        item = lock_item(db, item_id)
        if item.reservation_status == ItemStatus.OUT_OF_ORDER:
            raise InvalidRequestError(
                "Item is not available for loan",
                details={"item_id": item.id, "current_status": item.reservation_status.value},
            )

        conflicts = check_loan_period(db, item.id, start, end)
        if conflicts:
            _raise_loan_conflict(item.id, conflicts, stage="initial")

        borrower = get_user(db, borrower_id)
        if borrower is None:
            raise NotFoundError("User", borrower_id)

        status = LoanStatus.SCHEDULED if start > now else LoanStatus.ACTIVE
        loan = Loan(
            item_id=item.id,
            borrower_id=borrower.id,
            borrowed_at=start,
            due_at=end,
            status=status,
            notes=notes or "",
            contexts=normalize_contexts(contexts),
        )

        # Verificación final justo antes de escribir
        conflicts = check_loan_period(db, item.id, start, end)
        if conflicts:
            _raise_loan_conflict(item.id, conflicts, stage="final_check")

        db.add(loan)
        db.flush()

        comment = "Scheduled loan created" if status == LoanStatus.SCHEDULED else "Loan created"
        add_loan_history(
            db,
            loan,
            LoanHistoryAction.CREATION,
            performed_by_id=actor.user_id if actor else None,
            date=start,
            comment=comment,
        )
        old_item_status = item.reservation_status
        item.reservation_status = ItemStatus.BORROWED
        db.commit()
    except LendingError:
        db.rollback()
        raise

    db.refresh(loan)

    logger.info(
        "loan_created",
        extra={
            "operation": "loan_create",
            "resource": "loan",
            "loan_id": loan.id,
            "item_id": loan.item_id,
            "borrower_id": loan.borrower_id,
            "old_status": None,
            "new_status": loan.status,
            "old_item_status": old_item_status,
            "new_item_status": ItemStatus.BORROWED,
        },
    )
    return loan


def return_loan(
    db: Session,
    loan_id: int,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> LoanReturnResult:
    """
    Marca el préstamo como devuelto y después recalcula el estado del item.

    La devolución se confirma primero: si el recálculo del item falla,
    la devolución NO se deshace; se devuelve un aviso y el barrido de
    reconciliación lo corregirá más tarde.
    """
    now = as_utc(now) or utcnow()

    loan = get_loan(db, loan_id)
    try:
        lock_item(db, loan.item_id)
        # Releer con el lock tomado: otra devolución pudo confirmarse antes
        db.refresh(loan)
        if loan.returned_at is not None or loan.status == LoanStatus.RETURNED:
            raise InvalidRequestError(
                "Loan already returned",
                details={"loan_id": loan.id, "returned_at": loan.returned_at},
            )

        old_status = loan.status
        loan.returned_at = now
        loan.status = LoanStatus.RETURNED
        add_loan_history(
            db,
            loan,
            LoanHistoryAction.RETURN,
            performed_by_id=actor.user_id if actor else None,
            date=now,
            comment="Loan returned",
        )
        db.commit()
    except LendingError:
        db.rollback()
        raise

    logger.info(
        "loan_returned",
        extra={
            "operation": "loan_return",
            "resource": "loan",
            "loan_id": loan.id,
            "item_id": loan.item_id,
            "old_status": old_status,
            "new_status": LoanStatus.RETURNED,
        },
    )

    result = LoanReturnResult(loan=loan)
    try:
        item = lock_item(db, loan.item_id)
        old_item_status, result.item_status = refresh_item_status(db, item, now)
        db.commit()
    except (SQLAlchemyError, LendingError) as exc:
        db.rollback()
        warning = InconsistencyWarning(
            f"Loan {loan.id} was returned but the status of item {loan.item_id} "
            f"could not be refreshed: {exc}"
        )
        logger.warning(
            "item_status_refresh_failed",
            extra={
                "operation": "loan_return",
                "resource": "item",
                "loan_id": loan.id,
                "item_id": loan.item_id,
            },
            exc_info=True,
        )
        result.warnings.append(str(warning))
    else:
        logger.info(
            "item_status_refreshed",
            extra={
                "operation": "loan_return",
                "resource": "item",
                "item_id": loan.item_id,
                "old_status": old_item_status,
                "new_status": result.item_status,
            },
        )

    db.refresh(loan)
    return result


def mark_loan_lost(
    db: Session,
    loan_id: int,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> Loan:
    """Declara perdido el objeto prestado: préstamo e item pasan a OUT_OF_ORDER."""
    now = as_utc(now) or utcnow()

    try:
        loan = get_loan(db, loan_id)
        item = lock_item(db, loan.item_id)
        db.refresh(loan)
        if loan.returned_at is not None or loan.lost_at is not None:
            raise InvalidRequestError(
                "Loan is already closed",
                details={"loan_id": loan.id, "status": loan.status.value},
            )

        old_status = loan.status
        loan.lost_at = now
        loan.status = LoanStatus.OUT_OF_ORDER
        add_loan_history(
            db,
            loan,
            LoanHistoryAction.LOST,
            performed_by_id=actor.user_id if actor else None,
            date=now,
            comment="Item reported lost",
        )
        item.reservation_status = ItemStatus.OUT_OF_ORDER
        db.commit()
    except LendingError:
        db.rollback()
        raise

    db.refresh(loan)
    logger.info(
        "loan_marked_lost",
        extra={
            "operation": "loan_lost",
            "resource": "loan",
            "loan_id": loan.id,
            "item_id": loan.item_id,
            "old_status": old_status,
            "new_status": loan.status,
        },
    )
    return loan


def change_loan_status(
    db: Session,
    loan_id: int,
    status: Optional[LoanStatus],
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> Loan:
    """
    Cambio administrativo del estado guardado de un préstamo.

    RETURNED y OUT_OF_ORDER pasan por la devolución y la pérdida para que
    queden con su propio historial. Entre ACTIVE / OVERDUE / SCHEDULED el
    préstamo sigue ocupando el item, así que no hay conflicto que comprobar.
    """
    if status is None:
        raise InvalidRequestError("Status is required", details={"status": True})
    if status == LoanStatus.RETURNED:
        return return_loan(db, loan_id, actor=actor, now=now).loan
    if status == LoanStatus.OUT_OF_ORDER:
        return mark_loan_lost(db, loan_id, actor=actor, now=now)

    now = as_utc(now) or utcnow()
    loan = get_loan(db, loan_id)
    try:
        item = lock_item(db, loan.item_id)
        db.refresh(loan)
        if loan.returned_at is not None or loan.lost_at is not None:
            raise InvalidRequestError(
                "Loan is already closed",
                details={"loan_id": loan.id, "status": loan.status.value},
            )

        old_status = loan.status
        if old_status == status:
            db.rollback()
            return loan

        loan.status = status
        add_loan_history(
            db,
            loan,
            LoanHistoryAction.STATUS_CHANGE,
            performed_by_id=actor.user_id if actor else None,
            date=now,
            comment=f"Status change: {old_status.value} -> {status.value}",
        )
        db.flush()
        old_item_status, new_item_status = refresh_item_status(db, item, now)
        db.commit()
    except LendingError:
        db.rollback()
        raise

    db.refresh(loan)
    logger.info(
        "loan_status_changed",
        extra={
            "operation": "loan_status_change",
            "resource": "loan",
            "loan_id": loan.id,
            "item_id": loan.item_id,
            "old_status": old_status,
            "new_status": status,
            "old_item_status": old_item_status,
            "new_item_status": new_item_status,
        },
    )
    return loan
