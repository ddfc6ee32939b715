"""
Operaciones administrativas de autocorrección.

El estado guardado de los items es una caché que varias rutas de escritura
actualizan por su cuenta; estas operaciones lo vuelven a alinear con el
estado derivado y detectan/cierran dobles reservas. Todas son idempotentes.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from lending.core.logging import get_logger
from lending.db.models import (
    Item,
    ItemStatus,
    Loan,
    LoanHistoryAction,
    LoanStatus,
    Reservation,
    ReservationStatus,
    UserActionHistory,
    OPEN_LOAN_STATUSES,
)
from lending.services.availability import as_utc, is_holding_loan, overlaps, utcnow
from lending.services.conflicts import ConflictRecord, lock_item
from lending.services.identity import Actor
from lending.services.item_service import item_derived_status, refresh_item_status
from lending.services.loan_service import add_loan_history

logger = get_logger("services.maintenance")

STATUS_CORRECTION_ACTION = "ITEM_STATUS_CORRECTION"


@dataclass(frozen=True)
class StatusCorrection:
    item_id: int
    item_name: str
    old_status: ItemStatus
    new_status: ItemStatus

    def to_dict(self) -> dict:
        return {
            "id": self.item_id,
            "name": self.item_name,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
        }


@dataclass
class ReconciliationReport:
    fixed_borrowed: List[StatusCorrection] = field(default_factory=list)
    fixed_available: List[StatusCorrection] = field(default_factory=list)
    fixed_pending: List[StatusCorrection] = field(default_factory=list)

    @property
    def total_fixed(self) -> int:
        return len(self.fixed_borrowed) + len(self.fixed_available) + len(self.fixed_pending)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "fixed_borrowed": len(self.fixed_borrowed),
            "fixed_available": len(self.fixed_available),
            "fixed_pending": len(self.fixed_pending),
            "total_fixed": self.total_fixed,
        }


@dataclass(frozen=True)
class DoubleBooking:
    item_id: int
    first: ConflictRecord
    second: ConflictRecord

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "first": self.first.to_dict(),
            "second": self.second.to_dict(),
        }


@dataclass
class DuplicateCleanupResult:
    closed_loan_ids: List[int] = field(default_factory=list)
    item_ids: List[int] = field(default_factory=list)


def reconcile_item_statuses(
    db: Session,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> ReconciliationReport:
    """
    Barrido de reconciliación del estado guardado de los items.

    - BORROWED sin préstamo ACTIVE/OVERDUE abierto -> estado derivado.
    - AVAILABLE con préstamo ACTIVE/OVERDUE abierto -> BORROWED.
    - PENDING / RESERVED -> estado derivado (reservas ya vencidas o canceladas).

    Solo acerca el estado guardado al derivado, nunca al revés, así que
    puede ejecutarse en paralelo con el resto de operaciones.
    """
    now = as_utc(now) or utcnow()
    report = ReconciliationReport()

    items = (
        db.query(Item)
        .filter(
            Item.reservation_status.in_(
                [ItemStatus.BORROWED, ItemStatus.AVAILABLE, ItemStatus.PENDING, ItemStatus.RESERVED]
            )
        )
        .order_by(Item.id)
        .with_for_update()
        .all()
    )

    for item in items:
        loans = db.query(Loan).filter(Loan.item_id == item.id).all()
        holding = any(is_holding_loan(loan) for loan in loans)
        stored = item.reservation_status

        if stored == ItemStatus.BORROWED:
            if holding:
                continue
            new_status = item_derived_status(db, item, now)
            bucket = report.fixed_borrowed
        elif stored == ItemStatus.AVAILABLE:
            if not holding:
                continue
            new_status = ItemStatus.BORROWED
            bucket = report.fixed_available
        else:
            new_status = item_derived_status(db, item, now)
            bucket = report.fixed_pending

        if new_status == stored:
            continue

        item.reservation_status = new_status
        bucket.append(StatusCorrection(item.id, item.name, stored, new_status))
        db.add(
            UserActionHistory(
                user_id=actor.user_id if actor else None,
                action=STATUS_CORRECTION_ACTION,
                target_type="item",
                target_id=item.id,
                date=now,
                comment=f"Item status corrected: {stored.value} -> {new_status.value}",
            )
        )
        logger.info(
            "item_status_corrected",
            extra={
                "operation": "item_status_reconcile",
                "resource": "item",
                "item_id": item.id,
                "old_status": stored,
                "new_status": new_status,
            },
        )

    db.commit()

    logger.info(
        "item_status_reconciliation_finished",
        extra={
            "operation": "item_status_reconcile",
            "resource": "item",
            **report.stats,
        },
    )
    return report


def find_double_bookings(db: Session) -> List[DoubleBooking]:
    """
    Pares de registros activos (préstamo abierto o reserva CONFIRMED)
    del mismo item cuyos periodos se solapan.
    """
    records: Dict[int, List[ConflictRecord]] = defaultdict(list)

    open_loans = (
        db.query(Loan)
        .options(joinedload(Loan.borrower))
        .filter(Loan.status.in_(OPEN_LOAN_STATUSES), Loan.returned_at.is_(None))
        .order_by(Loan.item_id, Loan.borrowed_at)
        .all()
    )
    for loan in open_loans:
        records[loan.item_id].append(ConflictRecord.from_loan(loan))

    confirmed = (
        db.query(Reservation)
        .options(joinedload(Reservation.user))
        .filter(Reservation.status == ReservationStatus.CONFIRMED)
        .order_by(Reservation.item_id, Reservation.start_date)
        .all()
    )
    for reservation in confirmed:
        records[reservation.item_id].append(ConflictRecord.from_reservation(reservation))

    found: List[DoubleBooking] = []
    for item_id in sorted(records):
        for first, second in combinations(records[item_id], 2):
            if overlaps(first.start, first.end, second.start, second.end):
                found.append(DoubleBooking(item_id, first, second))
    return found


def close_duplicate_loans(
    db: Session,
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> DuplicateCleanupResult:
    """
    Cierra préstamos abiertos duplicados.

    Por item se recorren los préstamos abiertos del más reciente al más
    antiguo; se conserva cada uno que no se solape con otro ya conservado
    y el resto se marca RETURNED con historial `auto_close`.
    """
    now = as_utc(now) or utcnow()
    result = DuplicateCleanupResult()

    item_ids = [
        row[0]
        for row in db.query(Loan.item_id)
        .filter(Loan.status.in_(OPEN_LOAN_STATUSES), Loan.returned_at.is_(None))
        .group_by(Loan.item_id)
        .having(func.count(Loan.id) > 1)
        .order_by(Loan.item_id)
        .all()
    ]

    for item_id in item_ids:
        item = lock_item(db, item_id)
        loans = (
            db.query(Loan)
            .filter(
                Loan.item_id == item_id,
                Loan.status.in_(OPEN_LOAN_STATUSES),
                Loan.returned_at.is_(None),
            )
            .order_by(Loan.borrowed_at.desc(), Loan.id.desc())
            .all()
        )

        kept: List[Loan] = []
        closed_here = 0
        for loan in loans:
            duplicate_of = next(
                (k for k in kept if overlaps(k.borrowed_at, k.due_at, loan.borrowed_at, loan.due_at)),
                None,
            )
            if duplicate_of is None:
                kept.append(loan)
                continue

            loan.status = LoanStatus.RETURNED
            loan.returned_at = now
            add_loan_history(
                db,
                loan,
                LoanHistoryAction.AUTO_CLOSE,
                performed_by_id=actor.user_id if actor else None,
                date=now,
                comment=f"Closed as duplicate of loan {duplicate_of.id}",
            )
            result.closed_loan_ids.append(loan.id)
            closed_here += 1

        if closed_here:
            db.flush()
            refresh_item_status(db, item, now)
            result.item_ids.append(item_id)

    db.commit()

    logger.info(
        "duplicate_loans_closed",
        extra={
            "operation": "loan_duplicate_cleanup",
            "resource": "loan",
            "closed_loan_ids": result.closed_loan_ids,
            "item_ids": result.item_ids,
        },
    )
    return result
