"""Reservation service: the only code path that writes reservation state.

Each public method is one use case running in its own transaction. Writes
that can create occupancy (create, confirm, check-in) start by claiming the
room row: ``SELECT ... FOR UPDATE NOWAIT`` followed by a bump of
``booking_version``. The claim holds the room's write lock until commit, so
the conflict query that follows sees every reservation committed before it
and two overlapping bookings for one room can never both commit. Nothing
waits for a lock: when another request holds the claim, this one is rejected
at once with ``ConflictOrUnavailable``. Updates to an existing reservation
are also conditional on its ``version`` column.

After a successful commit the service reports to the audit sink, re-derives
the room's cached status, and on check-out hands the final bill to the
notifier. None of those can undo or fail the write.
"""

import logging
import secrets
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from innkeep.config import Settings, settings as default_settings
from innkeep.database import is_lock_conflict, utcnow
from innkeep.errors import (
    ConflictOrUnavailable,
    PaymentRequired,
    ReservationNotFound,
    RoomNotFound,
    RoomUnavailable,
    ValidationError,
)
from innkeep.models.reservation import Reservation
from innkeep.models.room import Room
from innkeep.reservations import ledger
from innkeep.reservations.audit import (
    AuditEntry,
    AuditSink,
    BackgroundDispatcher,
    BillNotifier,
    LoggingAuditSink,
)
from innkeep.reservations.availability import (
    AvailabilityResult,
    derive_room_status,
    find_conflicts,
    is_available,
    normalize_interval,
    search_available_rooms,
)
from innkeep.reservations.ledger import NewCharge, PaymentStatus
from innkeep.reservations.rendering import BillRenderer, render_bill
from innkeep.reservations.state_machine import (
    ReservationEvent,
    ReservationStatus,
    TERMINAL_STATUSES,
    next_status,
    resolve_transition,
)
from innkeep.schemas.bill import Bill

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_reference() -> str:
    """Human-readable reservation reference, e.g. ``RSV-7KQ2M9XD``."""
    return "RSV-" + "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))


@dataclass(frozen=True)
class GuestInfo:
    name: str
    email: str
    phone: str | None = None
    guest_id: uuid.UUID | None = None


@dataclass(frozen=True)
class GuestCount:
    adults: int = 1
    children: int = 0

    @property
    def total(self) -> int:
        return self.adults + self.children


@dataclass(frozen=True)
class TransitionContext:
    """Who requested a status change, and why (a reason is required to cancel)."""

    actor: str = "system"
    reason: str | None = None


@dataclass(frozen=True)
class ReservationFilters:
    status: str | None = None
    payment_status: str | None = None
    room_id: uuid.UUID | None = None
    guest_id: uuid.UUID | None = None
    guest_email: str | None = None
    check_in_from: date | None = None
    check_in_to: date | None = None
    skip: int = 0
    limit: int = 20


class ReservationService:
    """Create reservations, drive their lifecycle, and keep their bills."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        audit_sink: AuditSink | None = None,
        notifier: BillNotifier | None = None,
        renderers: Mapping[str, BillRenderer] | None = None,
        clock: Clock = utcnow,
        dispatcher: BackgroundDispatcher | None = None,
        settings: Settings = default_settings,
    ) -> None:
        self._session_factory = session_factory
        self._audit_sink = audit_sink or LoggingAuditSink()
        self._notifier = notifier
        self._renderers = dict(renderers or {})
        self._clock = clock
        self._dispatcher = dispatcher or BackgroundDispatcher()
        self._settings = settings

    @property
    def hold_ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.soft_hold_ttl_minutes)

    @property
    def dispatcher(self) -> BackgroundDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Transactions and loading
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """One session, one transaction. Storage failures become ``ConflictOrUnavailable``."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except StaleDataError as exc:
            logger.warning("Concurrent update aborted this write: %s", exc)
            raise ConflictOrUnavailable("The reservation was changed by another request; retry") from exc
        except DBAPIError as exc:
            logger.warning("Storage error during reservation write: %s", exc.orig)
            raise ConflictOrUnavailable("Reservation storage is unavailable or busy; retry") from exc

    async def _claim_room(self, session: AsyncSession, room_id: uuid.UUID) -> Room:
        """Take the room's write lock, or fail at once if another request holds it."""
        try:
            locked = await session.execute(
                select(Room.id).where(Room.id == room_id).with_for_update(nowait=True)
            )
            if locked.scalar_one_or_none() is None:
                raise RoomNotFound(room_id)
            # SQLite has no row locks; this write takes its database write lock.
            await session.execute(
                update(Room)
                .where(Room.id == room_id)
                .values(booking_version=Room.booking_version + 1)
                .execution_options(synchronize_session=False)
            )
        except DBAPIError as exc:
            if not is_lock_conflict(exc):
                raise
            logger.info("Room %s is claimed by another request; rejecting", room_id)
            raise ConflictOrUnavailable(
                "The room is being booked by another request; retry",
                room_id=str(room_id),
            ) from exc
        room = await session.get(Room, room_id, populate_existing=True)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    async def _load(self, session: AsyncSession, reference: str, *, for_update: bool = False) -> Reservation:
        reference = (reference or "").strip().upper()
        query = select(Reservation).where(Reservation.reference == reference)
        if for_update:
            query = query.with_for_update(nowait=True)
        result = await session.execute(query)
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFound(reference)
        return reservation

    # ------------------------------------------------------------------
    # After-commit side effects
    # ------------------------------------------------------------------

    def _report(self, action: str, actor: str, reservation: Reservation, now: datetime, **details) -> None:
        entry = AuditEntry(
            action=action,
            actor=actor,
            reservation=reservation.reference,
            timestamp=now,
            details=details,
        )
        self._dispatcher.submit(f"audit {action} {reservation.reference}", self._audit_sink.record(entry))

    async def _refresh_room_status(self, room_id: uuid.UUID) -> None:
        """Best-effort rebuild of the coarse ``Room.status`` cache."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    rows = (
                        await session.execute(
                            select(
                                Reservation.status,
                                Reservation.created_at,
                                Reservation.check_out,
                            ).where(
                                Reservation.room_id == room_id,
                                Reservation.status.not_in(TERMINAL_STATUSES),
                            )
                        )
                    ).all()
                    status = derive_room_status(rows, now=now, hold_ttl=self.hold_ttl)
                    # A room locked by another writer is refreshed by that writer after its commit.
                    unlocked = await session.execute(
                        select(Room.id).where(Room.id == room_id).with_for_update(skip_locked=True)
                    )
                    if unlocked.scalar_one_or_none() is None:
                        return
                    await session.execute(
                        update(Room)
                        .where(Room.id == room_id, Room.status != status)
                        .values(status=status)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError:
            logger.warning("Could not refresh status cache for room %s", room_id, exc_info=True)

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------

    async def create_reservation(
        self,
        room_id: uuid.UUID,
        guest: GuestInfo,
        check_in: date | datetime,
        check_out: date | datetime,
        guest_count: GuestCount = GuestCount(),
        *,
        special_requests: str | None = None,
        actor: str = "system",
    ) -> Reservation:
        """Hold ``room_id`` for the interval as a new ``pending`` reservation.

        Raises:
            ValidationError: bad dates, guest details, or capacity exceeded.
            RoomNotFound: unknown room.
            RoomUnavailable: a blocking reservation overlaps the interval.
            ConflictOrUnavailable: storage failure, or another request holds the room.
        """
        start, end = normalize_interval(check_in, check_out)
        now = self._clock()
        if start < now.date():
            raise ValidationError(
                "check_in cannot be in the past",
                check_in=start.isoformat(),
                today=now.date().isoformat(),
            )
        _validate_guest(guest, guest_count)

        async with self._transaction() as session:
            room = await self._claim_room(session, room_id)
            if guest_count.total > room.capacity:
                raise ValidationError(
                    f"Room {room.number} sleeps at most {room.capacity} guests",
                    capacity=room.capacity,
                    requested=guest_count.total,
                )

            conflicts = await find_conflicts(session, room.id, start, end, now=now, hold_ttl=self.hold_ttl)
            if conflicts:
                raise RoomUnavailable(conflicts)

            base_amount = ledger.compute_base_amount(room.nightly_rate, (end - start).days)
            reservation = Reservation(
                reference=generate_reference(),
                room_id=room.id,
                room=room,
                guest_id=guest.guest_id,
                guest_name=guest.name.strip(),
                guest_email=guest.email.strip().lower(),
                guest_phone=guest.phone,
                created_by=actor,
                check_in=start,
                check_out=end,
                adults=guest_count.adults,
                children=guest_count.children,
                special_requests=special_requests,
                status=ReservationStatus.PENDING.value,
                payment_status=PaymentStatus.UNPAID.value,
                cancellation_reason=None,
                nightly_rate=room.nightly_rate,
                base_amount=base_amount,
                total_amount=base_amount,
                checked_in_at=None,
                checked_out_at=None,
                cancelled_at=None,
                paid_at=None,
                finalized_at=None,
                charges=[],
                created_at=now,
                updated_at=now,
            )
            session.add(reservation)
            await session.flush()

        logger.info(
            "Created reservation %s for room %s (%s..%s, %s)",
            reservation.reference,
            room.number,
            start,
            end,
            base_amount,
        )
        self._report("reservation.created", actor, reservation, now, room=room.number)
        await self._refresh_room_status(room.id)
        return reservation

    async def change_status(
        self,
        reference: str,
        target_status: ReservationStatus | str,
        context: TransitionContext | None = None,
    ) -> Reservation:
        """Apply one lifecycle transition.

        Raises:
            InvalidTransition: the move is not in the transition table.
            ValidationError: missing cancellation reason, or check-in outside the stay.
            RoomUnavailable: confirm/check-in would overlap another reservation.
            PaymentRequired: check-out while unpaid.
        """
        context = context or TransitionContext()
        now = self._clock()
        final_bill: Bill | None = None

        async with self._transaction() as session:
            reservation = await self._load(session, reference, for_update=True)
            previous = reservation.status
            event = resolve_transition(previous, target_status)

            if event is ReservationEvent.CONFIRM:
                await self._confirm(session, reservation, now)
            elif event is ReservationEvent.CANCEL:
                self._cancel(reservation, context.reason, now)
            elif event is ReservationEvent.CHECK_IN:
                await self._check_in(session, reservation, now)
            elif event is ReservationEvent.CHECK_OUT:
                self._check_out(reservation, now)

            reservation.status = next_status(ReservationStatus(previous), event).value
            reservation.updated_at = now
            if event is ReservationEvent.CHECK_OUT:
                final_bill = self._bill(reservation)
            await session.flush()

        logger.info(
            "Reservation %s: %s -> %s (by %s)", reservation.reference, previous, reservation.status, context.actor
        )
        details = {"from": previous, "to": reservation.status}
        if context.reason:
            details["reason"] = context.reason
        self._report(f"reservation.{event.value}", context.actor, reservation, now, **details)
        if final_bill is not None and self._notifier is not None:
            self._dispatcher.submit(f"bill notification {reservation.reference}", self._notifier.notify(final_bill))
        await self._refresh_room_status(reservation.room_id)
        return reservation

    async def _confirm(self, session: AsyncSession, reservation: Reservation, now: datetime) -> None:
        await self._claim_room(session, reservation.room_id)
        conflicts = await find_conflicts(
            session,
            reservation.room_id,
            reservation.check_in,
            reservation.check_out,
            now=now,
            hold_ttl=self.hold_ttl,
            exclude_reservation_id=reservation.id,
        )
        if conflicts:
            raise RoomUnavailable(conflicts)

    @staticmethod
    def _cancel(reservation: Reservation, reason: str | None, now: datetime) -> None:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation reason is required", field="reason")
        reservation.cancellation_reason = reason
        reservation.cancelled_at = now

    async def _check_in(self, session: AsyncSession, reservation: Reservation, now: datetime) -> None:
        today = now.date()
        if not reservation.check_in <= today < reservation.check_out:
            raise ValidationError(
                "Check-in is only possible during the reserved stay",
                today=today.isoformat(),
                check_in=reservation.check_in.isoformat(),
                check_out=reservation.check_out.isoformat(),
            )
        await self._claim_room(session, reservation.room_id)
        conflicts = await find_conflicts(
            session,
            reservation.room_id,
            reservation.check_in,
            reservation.check_out,
            now=now,
            hold_ttl=self.hold_ttl,
            exclude_reservation_id=reservation.id,
            include_holds=False,
        )
        if conflicts:
            raise RoomUnavailable(conflicts, message="Room is occupied by another reservation")
        reservation.checked_in_at = now

    def _check_out(self, reservation: Reservation, now: datetime) -> None:
        if reservation.payment_status != PaymentStatus.PAID.value:
            raise PaymentRequired(reservation.reference, self._bill(reservation).grand_total)
        ledger.finalize(reservation, now=now)
        reservation.checked_out_at = now

    async def add_custom_charge(self, reference: str, charge: NewCharge, *, actor: str = "system") -> Reservation:
        """Append an ad-hoc charge; the total is recomputed in the same write."""
        now = self._clock()
        async with self._transaction() as session:
            reservation = await self._load(session, reference, for_update=True)
            line = ledger.add_charge(reservation, charge, actor=actor, now=now)
            await session.flush()

        self._report(
            "reservation.charge_added",
            actor,
            reservation,
            now,
            category=line.category,
            amount=str(line.line_total),
        )
        return reservation

    async def set_payment_status(
        self, reference: str, status: PaymentStatus | str, *, actor: str = "system"
    ) -> Reservation:
        now = self._clock()
        async with self._transaction() as session:
            reservation = await self._load(session, reference, for_update=True)
            previous = reservation.payment_status
            ledger.set_payment_status(reservation, status, now=now)
            await session.flush()

        if previous != reservation.payment_status:
            logger.info("Reservation %s payment %s -> %s", reservation.reference, previous, reservation.payment_status)
            self._report(
                "reservation.payment_updated",
                actor,
                reservation,
                now,
                payment_status=reservation.payment_status,
            )
        return reservation

    def _bill(self, reservation: Reservation) -> Bill:
        return ledger.generate_bill(
            reservation,
            service_charge_rate=self._settings.service_charge_rate,
            tax_rate=self._settings.tax_rate,
        )

    async def get_bill(self, reference: str, fmt: str = "data") -> Bill | bytes:
        """Bill projection for ``reference`` in the requested format."""
        async with self._session_factory() as session:
            reservation = await self._load(session, reference)
            bill = self._bill(reservation)
        return render_bill(
            bill,
            fmt,
            renderers=self._renderers,
            currency_label=self._settings.currency_label,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_reservation(self, reference: str) -> Reservation:
        async with self._session_factory() as session:
            return await self._load(session, reference)

    async def check_availability(
        self,
        room_id: uuid.UUID,
        check_in: date | datetime,
        check_out: date | datetime,
        exclude_reference: str | None = None,
    ) -> AvailabilityResult:
        async with self._session_factory() as session:
            if await session.get(Room, room_id) is None:
                raise RoomNotFound(room_id)
            exclude_id = None
            if exclude_reference:
                exclude_id = (await self._load(session, exclude_reference)).id
            return await is_available(
                session,
                room_id,
                check_in,
                check_out,
                exclude_id,
                now=self._clock(),
                hold_ttl=self.hold_ttl,
            )

    async def search_available_rooms(
        self,
        check_in: date | datetime,
        check_out: date | datetime,
        *,
        room_type: str | None = None,
        min_capacity: int | None = None,
    ) -> list[Room]:
        async with self._session_factory() as session:
            return await search_available_rooms(
                session,
                check_in,
                check_out,
                now=self._clock(),
                hold_ttl=self.hold_ttl,
                room_type=room_type,
                min_capacity=min_capacity,
            )

    async def list_reservations(self, filters: ReservationFilters | None = None) -> tuple[list[Reservation], int]:
        """Newest-first page of reservations plus the total matching count."""
        filters = filters or ReservationFilters()
        conditions = []
        if filters.status is not None:
            conditions.append(Reservation.status == filters.status)
        if filters.payment_status is not None:
            conditions.append(Reservation.payment_status == filters.payment_status)
        if filters.room_id is not None:
            conditions.append(Reservation.room_id == filters.room_id)
        if filters.guest_id is not None:
            conditions.append(Reservation.guest_id == filters.guest_id)
        if filters.guest_email is not None:
            conditions.append(Reservation.guest_email == filters.guest_email.strip().lower())
        if filters.check_in_from is not None:
            conditions.append(Reservation.check_in >= filters.check_in_from)
        if filters.check_in_to is not None:
            conditions.append(Reservation.check_in <= filters.check_in_to)

        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(Reservation).where(*conditions))
            ).scalar_one()
            result = await session.execute(
                select(Reservation)
                .where(*conditions)
                .order_by(Reservation.created_at.desc(), Reservation.reference)
                .offset(filters.skip)
                .limit(filters.limit)
            )
            return list(result.scalars().all()), total

    async def reservation_stats(self) -> dict:
        """Counts per status, paid count, and revenue (total of non-cancelled reservations)."""
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(
                        Reservation.status,
                        Reservation.payment_status,
                        func.count(),
                        func.coalesce(func.sum(Reservation.total_amount), 0),
                    ).group_by(Reservation.status, Reservation.payment_status)
                )
            ).all()

        by_status = {s.value: 0 for s in ReservationStatus}
        paid = 0
        revenue = Decimal("0")
        for status, payment_status, count, amount in rows:
            by_status[status] = by_status.get(status, 0) + count
            if payment_status == PaymentStatus.PAID.value:
                paid += count
            if status != ReservationStatus.CANCELLED.value:
                revenue += Decimal(str(amount))

        return {
            "total_reservations": sum(by_status.values()),
            "by_status": by_status,
            "paid_reservations": paid,
            "total_revenue": revenue.quantize(ledger.CENTS),
        }


def _validate_guest(guest: GuestInfo, guest_count: GuestCount) -> None:
    if not guest.name or not guest.name.strip():
        raise ValidationError("Guest name is required", field="guest.name")
    if not guest.email or "@" not in guest.email:
        raise ValidationError("A valid guest email is required", field="guest.email")
    if guest_count.adults < 1:
        raise ValidationError("At least one adult is required", field="adults")
    if guest_count.children < 0:
        raise ValidationError("Number of children cannot be negative", field="children")
