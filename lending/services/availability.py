"""
Reglas puras de disponibilidad: solape de intervalos y derivación de estados.

Nada de este módulo toca la base de datos; trabaja sobre cualquier objeto
con los atributos de Loan / Reservation / Item (modelos ORM o SimpleNamespace
en los tests). El estado guardado en Item.reservation_status es solo una
caché: lo que devuelve `derive_item_status` es la verdad.
"""
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Tuple

from lending.core.errors import InvalidRequestError
from lending.db.models import ItemStatus, LoanStatus, ReservationStatus, OPEN_LOAN_STATUSES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Any) -> Optional[datetime]:
    """
    Normaliza a datetime aware en UTC.

    SQLite devuelve datetimes naive: se interpretan como UTC.
    Cualquier otra cosa que no sea datetime devuelve None.
    """
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def overlaps(
    a_start: Optional[datetime],
    a_end: Optional[datetime],
    b_start: Optional[datetime],
    b_end: Optional[datetime],
) -> bool:
    """
    True si [a_start, a_end) y [b_start, b_end) se solapan.

    El fin es exclusivo: un periodo que termina justo cuando empieza otro
    no es conflicto. Fechas ausentes o inválidas nunca bloquean.
    """
    a_start, a_end = as_utc(a_start), as_utc(a_end)
    b_start, b_end = as_utc(b_start), as_utc(b_end)
    if None in (a_start, a_end, b_start, b_end):
        return False
    return a_start < b_end and b_start < a_end


def compute_loan_status(loan: Any, now: Optional[datetime] = None) -> LoanStatus:
    """Estado efectivo de un préstamo, independiente del valor guardado."""
    now = as_utc(now) or utcnow()

    if loan.returned_at:
        return LoanStatus.RETURNED
    if getattr(loan, "lost_at", None):
        return LoanStatus.OUT_OF_ORDER

    borrowed_at = as_utc(loan.borrowed_at)
    if borrowed_at and borrowed_at > now:
        return LoanStatus.SCHEDULED

    due_at = as_utc(loan.due_at)
    if due_at and due_at < now:
        return LoanStatus.OVERDUE
    return LoanStatus.ACTIVE


def is_open_loan(loan: Any) -> bool:
    return loan.returned_at is None and loan.status in OPEN_LOAN_STATUSES


def is_holding_loan(loan: Any) -> bool:
    """Préstamo en curso (ACTIVE/OVERDUE guardado y sin devolver)."""
    return loan.returned_at is None and loan.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


def is_pending_reservation(reservation: Any, now: Optional[datetime] = None) -> bool:
    if reservation.status != ReservationStatus.CONFIRMED:
        return False
    end_date = as_utc(reservation.end_date)
    return end_date is not None and end_date >= (as_utc(now) or utcnow())


def derive_item_status(
    loans: Iterable[Any],
    reservations: Iterable[Any],
    now: Optional[datetime] = None,
) -> ItemStatus:
    """
    Estado que debería mostrar un item según sus préstamos y reservas.

    Prioridad (gana la primera regla que se cumpla):
    1. Préstamo abierto en curso (ACTIVE / OVERDUE)       -> BORROWED
    2. Préstamo programado (SCHEDULED, empieza en el futuro) -> BORROWED
    3. Reserva CONFIRMED que aún no terminó               -> PENDING
    4. Nada de lo anterior                                -> AVAILABLE
    """
    now = as_utc(now) or utcnow()

    has_scheduled = False
    for loan in loans:
        if not is_open_loan(loan):
            continue
        effective = compute_loan_status(loan, now)
        if effective in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
            return ItemStatus.BORROWED
        if effective == LoanStatus.SCHEDULED:
            has_scheduled = True

    if has_scheduled:
        return ItemStatus.BORROWED

    if any(is_pending_reservation(r, now) for r in reservations):
        return ItemStatus.PENDING

    return ItemStatus.AVAILABLE


def resolve_item_status(
    item: Any,
    loans: Iterable[Any],
    reservations: Iterable[Any],
    now: Optional[datetime] = None,
) -> ItemStatus:
    # OUT_OF_ORDER es una marca administrativa: no se deriva de préstamos
    if item.reservation_status == ItemStatus.OUT_OF_ORDER:
        return ItemStatus.OUT_OF_ORDER
    return derive_item_status(loans, reservations, now)


def require_period(
    start: Any,
    end: Any,
    start_field: str = "start",
    end_field: str = "end",
) -> Tuple[datetime, datetime]:
    """
    Valida un periodo de entrada y lo devuelve normalizado a UTC.

    Lanza InvalidRequestError si falta alguna fecha, no es un datetime,
    o si el fin no es posterior al inicio.
    """
    missing = {start_field: start is None, end_field: end is None}
    if any(missing.values()):
        raise InvalidRequestError("Start and end dates are required", details=missing)

    start_utc, end_utc = as_utc(start), as_utc(end)
    if start_utc is None or end_utc is None:
        raise InvalidRequestError(
            "Invalid date format",
            details={start_field: str(start), end_field: str(end)},
        )
    if end_utc <= start_utc:
        raise InvalidRequestError(
            "End date must be after start date",
            details={start_field: start_utc.isoformat(), end_field: end_utc.isoformat()},
        )
    return start_utc, end_utc
