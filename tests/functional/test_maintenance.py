from datetime import datetime, timezone

from lending.db.models import (
    ItemStatus,
    Loan,
    LoanHistory,
    LoanHistoryAction,
    LoanStatus,
    Reservation,
    ReservationStatus,
    UserActionHistory,
)
from lending.services.identity import Actor
from lending.services.maintenance_service import (
    STATUS_CORRECTION_ACTION,
    close_duplicate_loans,
    find_double_bookings,
    reconcile_item_statuses,
)

UTC = timezone.utc
NOW = datetime(2024, 6, 1, tzinfo=UTC)


def dt(*args):
    return datetime(*args, tzinfo=UTC)


def add_loan(db, item, user, start, end, status=LoanStatus.ACTIVE):
    loan = Loan(item_id=item.id, borrower_id=user.id, borrowed_at=start, due_at=end, status=status)
    db.add(loan)
    db.commit()
    return loan


def add_reservation(db, item, user, start, end, status=ReservationStatus.CONFIRMED):
    reservation = Reservation(item_id=item.id, user_id=user.id, start_date=start, end_date=end, status=status)
    db.add(reservation)
    db.commit()
    return reservation


# ======================================================
# RECONCILIACIÓN DEL ESTADO GUARDADO
# ======================================================
def test_reconciliation_fixes_every_drift(db_session, make_item, make_user, admin_user):
    user = make_user()
    stale_borrowed = make_item("Stale borrowed", status=ItemStatus.BORROWED)
    missing_borrowed = make_item("Missing borrowed", status=ItemStatus.AVAILABLE)
    reserved_only = make_item("Reserved only", status=ItemStatus.BORROWED)
    stale_pending = make_item("Stale pending", status=ItemStatus.PENDING)
    broken = make_item("Broken", status=ItemStatus.OUT_OF_ORDER)

    add_loan(db_session, missing_borrowed, user, dt(2024, 5, 20), dt(2024, 6, 20))
    add_reservation(db_session, reserved_only, user, dt(2024, 6, 5), dt(2024, 6, 10))
    add_reservation(db_session, stale_pending, user, dt(2024, 4, 1), dt(2024, 5, 1))
    add_loan(db_session, broken, user, dt(2024, 5, 20), dt(2024, 6, 20))

    report = reconcile_item_statuses(db_session, actor=Actor.from_user(admin_user), now=NOW)

    assert [(c.item_id, c.new_status) for c in report.fixed_borrowed] == [
        (stale_borrowed.id, ItemStatus.AVAILABLE),
        (reserved_only.id, ItemStatus.PENDING),
    ]
    assert [(c.item_id, c.new_status) for c in report.fixed_available] == [
        (missing_borrowed.id, ItemStatus.BORROWED),
    ]
    assert [(c.item_id, c.new_status) for c in report.fixed_pending] == [
        (stale_pending.id, ItemStatus.AVAILABLE),
    ]
    assert report.stats["total_fixed"] == 4

    db_session.refresh(broken)
    assert broken.reservation_status == ItemStatus.OUT_OF_ORDER

    actions = db_session.query(UserActionHistory).order_by(UserActionHistory.id).all()
    assert len(actions) == 4
    assert {a.action for a in actions} == {STATUS_CORRECTION_ACTION}
    assert {a.user_id for a in actions} == {admin_user.id}
    assert actions[0].comment == "Item status corrected: BORROWED -> AVAILABLE"


def test_reconciliation_is_idempotent(db_session, make_item, make_user):
    user = make_user()
    make_item("Stale", status=ItemStatus.BORROWED)
    held = make_item("Held", status=ItemStatus.AVAILABLE)
    add_loan(db_session, held, user, dt(2024, 5, 20), dt(2024, 6, 20))

    first = reconcile_item_statuses(db_session, now=NOW)
    second = reconcile_item_statuses(db_session, now=NOW)

    assert first.total_fixed == 2
    assert second.total_fixed == 0
    assert db_session.query(UserActionHistory).count() == 2


def test_borrowed_item_with_scheduled_loan_is_left_alone(db_session, make_item, make_user):
    item = make_item(status=ItemStatus.BORROWED)
    add_loan(db_session, item, make_user(), dt(2024, 7, 1), dt(2024, 7, 10), status=LoanStatus.SCHEDULED)

    report = reconcile_item_statuses(db_session, now=NOW)

    assert report.total_fixed == 0
    db_session.refresh(item)
    assert item.reservation_status == ItemStatus.BORROWED


# ======================================================
# DOBLES RESERVAS
# ======================================================
def test_find_double_bookings(db_session, make_item, make_user):
    user = make_user("Alice", "Martin")
    busy = make_item("Busy")
    calm = make_item("Calm")

    first = add_loan(db_session, busy, user, dt(2024, 3, 1), dt(2024, 3, 10))
    second = add_loan(db_session, busy, user, dt(2024, 3, 5), dt(2024, 3, 15))
    reservation = add_reservation(db_session, busy, user, dt(2024, 3, 8), dt(2024, 3, 9))
    add_loan(db_session, calm, user, dt(2024, 3, 1), dt(2024, 3, 10))
    add_loan(db_session, calm, user, dt(2024, 3, 10), dt(2024, 3, 20))
    add_reservation(db_session, calm, user, dt(2024, 3, 1), dt(2024, 3, 5), status=ReservationStatus.CANCELLED)

    found = find_double_bookings(db_session)

    assert {b.item_id for b in found} == {busy.id}
    pairs = {frozenset([(b.first.kind, b.first.id), (b.second.kind, b.second.id)]) for b in found}
    assert pairs == {
        frozenset([("loan", first.id), ("loan", second.id)]),
        frozenset([("loan", first.id), ("reservation", reservation.id)]),
        frozenset([("loan", second.id), ("reservation", reservation.id)]),
    }
    assert found[0].first.holder_name == "Alice Martin"


# ======================================================
# CIERRE DE PRÉSTAMOS DUPLICADOS
# ======================================================
def test_close_duplicate_loans_keeps_most_recent(db_session, make_item, make_user, admin_user):
    user = make_user()
    item = make_item(status=ItemStatus.BORROWED)
    oldest = add_loan(db_session, item, user, dt(2024, 3, 1), dt(2024, 3, 10))
    newer = add_loan(db_session, item, user, dt(2024, 3, 5), dt(2024, 3, 15))
    upcoming = add_loan(db_session, item, user, dt(2024, 5, 1), dt(2024, 5, 10), status=LoanStatus.SCHEDULED)

    result = close_duplicate_loans(db_session, actor=Actor.from_user(admin_user), now=dt(2024, 3, 8))

    assert result.closed_loan_ids == [oldest.id]
    assert result.item_ids == [item.id]

    db_session.refresh(oldest)
    db_session.refresh(newer)
    db_session.refresh(upcoming)
    assert oldest.status == LoanStatus.RETURNED
    assert oldest.returned_at is not None
    assert newer.status == LoanStatus.ACTIVE
    assert upcoming.status == LoanStatus.SCHEDULED

    closing = db_session.query(LoanHistory).filter(LoanHistory.loan_id == oldest.id).one()
    assert closing.action == LoanHistoryAction.AUTO_CLOSE
    assert closing.action.value == "auto_close"
    assert closing.performed_by_id == admin_user.id
    assert closing.comment == f"Closed as duplicate of loan {newer.id}"

    db_session.refresh(item)
    assert item.reservation_status == ItemStatus.BORROWED

    again = close_duplicate_loans(db_session, now=dt(2024, 3, 8))
    assert again.closed_loan_ids == []
