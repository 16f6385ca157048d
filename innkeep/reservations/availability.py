"""Availability index: is a room free for a half-open date interval?

Occupancy intervals are ``[check_in, check_out)``; two intervals conflict when
``existing.check_in < requested.check_out and requested.check_in < existing.check_out``.

Confirmed and checked-in reservations always block. A pending reservation is a
soft hold: it blocks only until ``hold_ttl`` has elapsed since it was created.
Expiry is evaluated here, at query time; nothing rewrites expired holds.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from innkeep.errors import Conflict, ValidationError
from innkeep.models.reservation import Reservation
from innkeep.models.room import Room
from innkeep.reservations.state_machine import OCCUPYING_STATUSES, ReservationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityResult:
    """Outcome of an availability query; ``conflicts`` is empty when free."""

    available: bool
    conflicts: list[Conflict] = field(default_factory=list)


def as_date(value: date | datetime) -> date:
    """Calendar date of ``value``; time of day never affects occupancy."""
    return value.date() if isinstance(value, datetime) else value


def normalize_interval(check_in: date | datetime, check_out: date | datetime) -> tuple[date, date]:
    """Return ``(check_in, check_out)`` as dates, rejecting empty or inverted ranges."""
    if check_in is None or check_out is None:
        raise ValidationError("check_in and check_out are required")
    start, end = as_date(check_in), as_date(check_out)
    if end <= start:
        raise ValidationError(
            "check_out must be after check_in",
            check_in=start.isoformat(),
            check_out=end.isoformat(),
        )
    return start, end


def hold_is_active(reservation: Reservation, *, now: datetime, hold_ttl: timedelta) -> bool:
    """Whether a pending reservation still blocks its room at ``now``."""
    return reservation.status == ReservationStatus.PENDING.value and reservation.created_at > now - hold_ttl


def blocks_room(reservation: Reservation, *, now: datetime, hold_ttl: timedelta) -> bool:
    return reservation.status in OCCUPYING_STATUSES or hold_is_active(reservation, now=now, hold_ttl=hold_ttl)


def _blocking_clause(*, now: datetime, hold_ttl: timedelta, include_holds: bool) -> ColumnElement[bool]:
    occupying = Reservation.status.in_(OCCUPYING_STATUSES)
    if not include_holds:
        return occupying
    active_hold = and_(
        Reservation.status == ReservationStatus.PENDING.value,
        Reservation.created_at > now - hold_ttl,
    )
    return or_(occupying, active_hold)


async def find_conflicts(
    session: AsyncSession,
    room_id: uuid.UUID,
    check_in: date,
    check_out: date,
    *,
    now: datetime,
    hold_ttl: timedelta,
    exclude_reservation_id: uuid.UUID | None = None,
    include_holds: bool = True,
) -> list[Conflict]:
    """Blocking reservations on ``room_id`` overlapping ``[check_in, check_out)``.

    ``include_holds=False`` restricts the check to confirmed/checked-in rows,
    which is what check-in re-verifies.
    """
    query = select(
        Reservation.reference,
        Reservation.status,
        Reservation.check_in,
        Reservation.check_out,
    ).where(
        Reservation.room_id == room_id,
        Reservation.check_in < check_out,
        Reservation.check_out > check_in,
        _blocking_clause(now=now, hold_ttl=hold_ttl, include_holds=include_holds),
    )
    if exclude_reservation_id is not None:
        query = query.where(Reservation.id != exclude_reservation_id)

    result = await session.execute(query.order_by(Reservation.check_in, Reservation.reference))
    return [
        Conflict(reference=row.reference, status=row.status, check_in=row.check_in, check_out=row.check_out)
        for row in result
    ]


async def is_available(
    session: AsyncSession,
    room_id: uuid.UUID,
    check_in: date | datetime,
    check_out: date | datetime,
    exclude_reservation_id: uuid.UUID | None = None,
    *,
    now: datetime,
    hold_ttl: timedelta,
) -> AvailabilityResult:
    """Answer "is room ``room_id`` free for ``[check_in, check_out)``?"."""
    start, end = normalize_interval(check_in, check_out)
    conflicts = await find_conflicts(
        session,
        room_id,
        start,
        end,
        now=now,
        hold_ttl=hold_ttl,
        exclude_reservation_id=exclude_reservation_id,
    )
    if conflicts:
        logger.debug(
            "Room %s blocked for %s..%s by %s", room_id, start, end, [c.reference for c in conflicts]
        )
    return AvailabilityResult(available=not conflicts, conflicts=conflicts)


async def search_available_rooms(
    session: AsyncSession,
    check_in: date | datetime,
    check_out: date | datetime,
    *,
    now: datetime,
    hold_ttl: timedelta,
    room_type: str | None = None,
    min_capacity: int | None = None,
) -> list[Room]:
    """Rooms with no blocking reservation in the interval, ordered by room number.

    Decided from reservation rows; the cached ``Room.status`` flag is ignored.
    """
    start, end = normalize_interval(check_in, check_out)

    blocked = select(Reservation.room_id).where(
        Reservation.check_in < end,
        Reservation.check_out > start,
        _blocking_clause(now=now, hold_ttl=hold_ttl, include_holds=True),
    )
    query = select(Room).where(Room.id.not_in(blocked))
    if room_type is not None:
        query = query.where(Room.room_type == room_type)
    if min_capacity is not None:
        query = query.where(Room.capacity >= min_capacity)

    result = await session.execute(query.order_by(Room.number))
    return list(result.scalars().all())


def derive_room_status(reservations: list[Reservation], *, now: datetime, hold_ttl: timedelta) -> str:
    """Coarse room flag for dashboards: occupied, reserved, or available.

    ``occupied`` while anyone is checked in; ``reserved`` while an upcoming
    stay or live hold exists; otherwise ``available``.
    """
    if any(r.status == ReservationStatus.CHECKED_IN.value for r in reservations):
        return "occupied"
    today = now.date()
    if any(r.check_out > today and blocks_room(r, now=now, hold_ttl=hold_ttl) for r in reservations):
        return "reserved"
    return "available"
