"""Consulta de conflictos: qué préstamos/reservas chocan con un periodo candidato."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, joinedload

from lending.core.errors import NotFoundError
from lending.db.models import (
    Item,
    Loan,
    Reservation,
    ReservationStatus,
    OPEN_LOAN_STATUSES,
)
from lending.services.availability import as_utc, overlaps


@dataclass(frozen=True)
class ConflictRecord:
    kind: str  # "loan" | "reservation"
    id: int
    start: datetime
    end: datetime
    holder_name: str

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "holder_name": self.holder_name,
        }

    @classmethod
    def from_loan(cls, loan: Loan) -> "ConflictRecord":
        return cls(
            kind="loan",
            id=loan.id,
            start=as_utc(loan.borrowed_at),
            end=as_utc(loan.due_at),
            holder_name=loan.borrower.full_name if loan.borrower else "",
        )

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "ConflictRecord":
        return cls(
            kind="reservation",
            id=reservation.id,
            start=as_utc(reservation.start_date),
            end=as_utc(reservation.end_date),
            holder_name=reservation.user.full_name if reservation.user else "",
        )


@dataclass
class LoanConflicts:
    loans: List[ConflictRecord] = field(default_factory=list)
    reservations: List[ConflictRecord] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.loans or self.reservations)


def lock_item(db: Session, item_id: int) -> Item:
    """
    Bloquea la fila del item (SELECT ... FOR UPDATE) hasta el commit/rollback.

    Serializa check + escritura entre peticiones concurrentes sobre el mismo
    item. SQLite no tiene FOR UPDATE y pysqlite no abre transacción hasta la
    primera escritura: ahí se hace una escritura nula sobre el item para
    tomar ya el lock de escritura de la BD.
    """
    if db.get_bind().dialect.name == "sqlite":
        items = Item.__table__
        db.execute(
            update(items)
            .where(items.c.id == item_id)
            .values(updated_at=items.c.updated_at)
        )

    item = db.execute(
        select(Item)
        .where(Item.id == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if item is None:
        raise NotFoundError("Item", item_id)
    return item


def find_conflicting_loans(
    db: Session,
    item_id: int,
    start: datetime,
    end: datetime,
    exclude_loan_id: Optional[int] = None,
) -> List[Loan]:
    query = (
        db.query(Loan)
        .options(joinedload(Loan.borrower))
        .filter(
            Loan.item_id == item_id,
            Loan.status.in_(OPEN_LOAN_STATUSES),
            Loan.returned_at.is_(None),
        )
    )
    if exclude_loan_id is not None:
        query = query.filter(Loan.id != exclude_loan_id)

    return [
        loan
        for loan in query.order_by(Loan.borrowed_at).all()
        if overlaps(loan.borrowed_at, loan.due_at, start, end)
    ]


def find_conflicting_reservations(
    db: Session,
    item_id: int,
    start: datetime,
    end: datetime,
    exclude_reservation_id: Optional[int] = None,
) -> List[Reservation]:
    query = (
        db.query(Reservation)
        .options(joinedload(Reservation.user))
        .filter(
            Reservation.item_id == item_id,
            Reservation.status == ReservationStatus.CONFIRMED,
        )
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)

    return [
        reservation
        for reservation in query.order_by(Reservation.start_date).all()
        if overlaps(reservation.start_date, reservation.end_date, start, end)
    ]


def check_loan_period(
    db: Session,
    item_id: int,
    start: datetime,
    end: datetime,
    exclude_loan_id: Optional[int] = None,
) -> LoanConflicts:
    """
    Conflictos de un préstamo candidato: préstamos abiertos y reservas
    CONFIRMED del item que se solapan con [start, end).
    """
    return LoanConflicts(
        loans=[
            ConflictRecord.from_loan(loan)
            for loan in find_conflicting_loans(db, item_id, start, end, exclude_loan_id)
        ],
        reservations=[
            ConflictRecord.from_reservation(r)
            for r in find_conflicting_reservations(db, item_id, start, end)
        ],
    )


def check_reservation_period(
    db: Session,
    item_id: int,
    start: datetime,
    end: datetime,
    exclude_reservation_id: Optional[int] = None,
) -> List[ConflictRecord]:
    """
    Conflictos de una reserva candidata: solo otras reservas CONFIRMED.

    Los préstamos en curso NO se comprueban aquí: una reserva puede
    coincidir con un préstamo hasta que un admin lo resuelva.
    """
    return [
        ConflictRecord.from_reservation(r)
        for r in find_conflicting_reservations(
            db, item_id, start, end, exclude_reservation_id
        )
    ]
