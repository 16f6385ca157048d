"""Reservation and charge models: the central booking record and its ledger lines."""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from innkeep.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class Reservation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A guest's claim on a room for [check_in, check_out).

    ``total_amount`` is always ``base_amount`` plus the sum of the charge
    lines; only the billing ledger writes it. ``version`` makes every UPDATE
    conditional on the row not having changed since it was read.
    """

    __tablename__ = "reservations"

    reference: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    room_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("rooms.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Guest identity
    guest_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    guest_name: Mapped[str] = mapped_column(String(255), nullable=False)
    guest_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    guest_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)  # actor id of the booker

    # Occupancy
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)
    adults: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    children: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20),
        default="pending",
        index=True,
    )  # pending, confirmed, checked_in, checked_out, cancelled
    payment_status: Mapped[str] = mapped_column(String(20), default="unpaid")  # unpaid, paid
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Money
    nightly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Audit
    checked_in_at: Mapped[datetime | None] = mapped_column(nullable=True)
    checked_out_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    room: Mapped["Room"] = relationship(back_populates="reservations", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    charges: Mapped[list["Charge"]] = relationship(
        back_populates="reservation",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="Charge.position",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_reservations_room_dates", "room_id", "check_in", "check_out"),
        CheckConstraint("check_out > check_in", name="ck_reservations_dates"),
    )

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    @property
    def guest_count(self) -> int:
        return self.adults + self.children

    def __repr__(self) -> str:
        return f"<Reservation(reference={self.reference!r}, room_id={self.room_id}, status={self.status})>"


class Charge(UUIDPrimaryKeyMixin, Base):
    """An ad-hoc line item (minibar, laundry, ...) embedded in one reservation."""

    __tablename__ = "reservation_charges"

    reservation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("reservations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)  # see ChargeCategory
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), default="system")
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    reservation: Mapped[Reservation] = relationship(back_populates="charges", lazy="select")

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price

    def __repr__(self) -> str:
        return f"<Charge(category={self.category!r}, quantity={self.quantity}, unit_price={self.unit_price})>"
