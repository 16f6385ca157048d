"""Room model: bookable inventory units."""

from decimal import Decimal

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from innkeep.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Room(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A room owned by inventory management.

    ``status`` is a denormalized cache rebuilt from reservations after each
    write; availability is always decided from reservation rows.
    ``booking_version`` is bumped by every writer that claims the room.
    """

    __tablename__ = "rooms"

    number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    room_type: Mapped[str] = mapped_column(String(50), nullable=False)  # single, double, suite, family
    nightly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    status: Mapped[str] = mapped_column(String(20), default="available")  # available, reserved, occupied
    booking_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    reservations: Mapped[list["Reservation"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        back_populates="room", lazy="select"
    )

    def __repr__(self) -> str:
        return f"<Room(id={self.id}, number={self.number!r}, status={self.status!r})>"
