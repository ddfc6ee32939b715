from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from lending.db.session import Base
from sqlalchemy.sql import func


# ======================
# Enums
# ======================

class ItemCategory(str, Enum):
    BOOK = "BOOK"
    EQUIPMENT = "EQUIPMENT"


class ItemStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    RESERVED = "RESERVED"
    OUT_OF_ORDER = "OUT_OF_ORDER"
    PENDING = "PENDING"


class LoanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"
    SCHEDULED = "SCHEDULED"
    OUT_OF_ORDER = "OUT_OF_ORDER"


class LoanContext(str, Enum):
    CONFERENCE_FINANCEURS = "CONFERENCE_FINANCEURS"
    APPUIS_SPECIFIQUES = "APPUIS_SPECIFIQUES"
    PLATEFORME_AGEFIPH = "PLATEFORME_AGEFIPH"
    AIDANTS = "AIDANTS"
    RUNE = "RUNE"
    PNT = "PNT"
    SAVS = "SAVS"
    CICAT = "CICAT"
    LOGEMENT_INCLUSIF = "LOGEMENT_INCLUSIF"


class ReservationStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class LoanHistoryAction(str, Enum):
    CREATION = "creation"
    RETURN = "return"
    LOST = "lost"
    AUTO_CLOSE = "auto_close"
    STATUS_CHANGE = "status_change"


class ReservationAction(str, Enum):
    RESERVE = "RESERVE"
    MODIFY = "MODIFY"
    MODIFY_FAILED = "MODIFY_FAILED"
    UNAUTHORIZED_MODIFY = "UNAUTHORIZED_MODIFY"
    CANCEL = "CANCEL"
    EXPIRED = "EXPIRED"


# Un préstamo "abierto" ocupa el item (ver services.availability)
OPEN_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.SCHEDULED)


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


def _updated_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ======================
# User
# ======================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    loans: Mapped[list["Loan"]] = relationship("Loan", back_populates="borrower")
    reservations: Mapped[list["Reservation"]] = relationship(
        "Reservation", back_populates="user"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ======================
# Item
# ======================

class Item(Base):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[ItemCategory] = mapped_column(
        SqlEnum(ItemCategory), nullable=False, default=ItemCategory.EQUIPMENT
    )

    # Estado "cacheado": la verdad es el estado derivado de préstamos/reservas
    reservation_status: Mapped[ItemStatus] = mapped_column(
        SqlEnum(ItemStatus), nullable=False, default=ItemStatus.AVAILABLE
    )

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    loans: Mapped[list["Loan"]] = relationship("Loan", back_populates="item")
    reservations: Mapped[list["Reservation"]] = relationship(
        "Reservation", back_populates="item"
    )


# ======================
# Loan
# ======================

class Loan(Base):
    __tablename__ = "loans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    item_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    borrower_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    borrowed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lost_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[LoanStatus] = mapped_column(
        SqlEnum(LoanStatus),
        nullable=False,
        default=LoanStatus.ACTIVE,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    contexts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    item: Mapped["Item"] = relationship("Item", back_populates="loans")
    borrower: Mapped["User"] = relationship("User", back_populates="loans")
    history: Mapped[list["LoanHistory"]] = relationship(
        "LoanHistory",
        back_populates="loan",
        order_by="LoanHistory.id",
    )


# ======================
# Reservation
# ======================

class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    item_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[ReservationStatus] = mapped_column(
        SqlEnum(ReservationStatus),
        nullable=False,
        default=ReservationStatus.CONFIRMED,
    )

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    item: Mapped["Item"] = relationship("Item", back_populates="reservations")
    user: Mapped["User"] = relationship("User", back_populates="reservations")


# ======================
# Historiales (solo inserción)
# ======================

class LoanHistory(Base):
    __tablename__ = "loan_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    loan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("loans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    action: Mapped[LoanHistoryAction] = mapped_column(SqlEnum(LoanHistoryAction), nullable=False)
    status: Mapped[LoanStatus] = mapped_column(SqlEnum(LoanStatus), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # user_id = prestatario; performed_by_id = quien ejecutó la acción
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    performed_by_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    loan: Mapped["Loan"] = relationship("Loan", back_populates="history")


class ReservationHistory(Base):
    __tablename__ = "reservation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    reservation_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("reservations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    item_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("items.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    action: Mapped[ReservationAction] = mapped_column(SqlEnum(ReservationAction), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)


class UserActionHistory(Base):
    __tablename__ = "user_action_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # None = acción automática del sistema
    user_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
