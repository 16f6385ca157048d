"""Tests for ReservationService: lifecycle scenarios, invariants, and queries."""

import asyncio
import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, text, update
from sqlalchemy.orm.exc import StaleDataError

from innkeep.errors import (
    ConflictOrUnavailable,
    InvalidTransition,
    LedgerClosed,
    PaymentRequired,
    ReservationNotFound,
    RoomNotFound,
    RoomUnavailable,
    ValidationError,
)
from innkeep.models.reservation import Reservation
from innkeep.models.room import Room
from innkeep.reservations.audit import BackgroundDispatcher
from innkeep.reservations.ledger import NewCharge
from innkeep.reservations.service import (
    GuestCount,
    GuestInfo,
    ReservationFilters,
    ReservationService,
    TransitionContext,
    generate_reference,
)
from innkeep.schemas.bill import Bill
from tests.conftest import START, guest

MINIBAR = NewCharge(description="Minibar", category="minibar", quantity=1, unit_price=Decimal("1500"))


def _d(offset: int) -> date:
    return START.date() + timedelta(days=offset)


async def _room_status(db_session, room_id: uuid.UUID) -> str:
    room = await db_session.get(Room, room_id, populate_existing=True)
    return room.status


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateReservation:
    async def test_create_pending_hold(self, service: ReservationService, room, audit_sink) -> None:
        reservation = await service.create_reservation(
            room.id,
            GuestInfo(name=" Asha Rai ", email="Asha@Example.com"),
            _d(1),
            _d(3),
            GuestCount(adults=2),
            special_requests="Late arrival",
            actor="guest-42",
        )
        assert reservation.status == "pending"
        assert reservation.payment_status == "unpaid"
        assert reservation.reference.startswith("RSV-")
        assert reservation.guest_name == "Asha Rai"
        assert reservation.guest_email == "asha@example.com"
        assert reservation.nights == 2
        assert reservation.base_amount == Decimal("20000")
        assert reservation.total_amount == Decimal("20000")
        assert reservation.created_at == START

        await service.dispatcher.drain()
        assert audit_sink.actions == ["reservation.created"]
        assert audit_sink.entries[0].actor == "guest-42"

    async def test_check_in_today_is_allowed(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(0), _d(1))
        assert reservation.check_in == START.date()

    async def test_past_check_in_rejected(self, service: ReservationService, room) -> None:
        with pytest.raises(ValidationError):
            await service.create_reservation(room.id, guest(), _d(-1), _d(2))

    async def test_inverted_dates_rejected(self, service: ReservationService, room) -> None:
        with pytest.raises(ValidationError):
            await service.create_reservation(room.id, guest(), _d(3), _d(3))

    async def test_capacity_enforced(self, service: ReservationService, room) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create_reservation(room.id, guest(), _d(1), _d(2), GuestCount(adults=2, children=1))
        assert exc_info.value.context == {"capacity": 2, "requested": 3}

    @pytest.mark.parametrize(
        "info",
        [GuestInfo(name="", email="a@example.com"), GuestInfo(name="Asha", email="not-an-email")],
    )
    async def test_guest_details_required(self, service: ReservationService, room, info) -> None:
        with pytest.raises(ValidationError):
            await service.create_reservation(room.id, info, _d(1), _d(2))

    async def test_unknown_room(self, service: ReservationService, room) -> None:
        with pytest.raises(RoomNotFound):
            await service.create_reservation(uuid.uuid4(), guest(), _d(1), _d(2))

    async def test_concurrent_overlapping_creates_one_wins(self, service: ReservationService, room) -> None:
        attempts = [
            service.create_reservation(room.id, guest(email=f"g{i}@example.com"), _d(1 + i % 2), _d(3 + i % 2))
            for i in range(5)
        ]
        results = await asyncio.gather(*attempts, return_exceptions=True)

        created = [r for r in results if isinstance(r, Reservation)]
        unavailable = [r for r in results if isinstance(r, RoomUnavailable)]
        busy = [r for r in results if isinstance(r, ConflictOrUnavailable)]
        assert len(created) == 1
        # Losers either saw the committed winner or found its claim still held.
        assert len(unavailable) + len(busy) == 4
        assert all(exc.conflicts[0].reference == created[0].reference for exc in unavailable)

    async def test_held_room_claim_rejects_immediately(
        self, service: ReservationService, room, test_engine
    ) -> None:
        async with test_engine.connect() as conn:
            await conn.execute(
                update(Room).where(Room.id == room.id).values(booking_version=Room.booking_version + 1)
            )

            with pytest.raises(ConflictOrUnavailable) as exc_info:
                await asyncio.wait_for(service.create_reservation(room.id, guest(), _d(1), _d(3)), timeout=2)
            assert exc_info.value.context == {"room_id": str(room.id)}

            # Reads are not blocked by the in-flight writer.
            result = await asyncio.wait_for(service.check_availability(room.id, _d(1), _d(3)), timeout=2)
            assert result.available is True

            await conn.rollback()

        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        assert reservation.status == "pending"

    def test_reference_format(self) -> None:
        reference = generate_reference()
        assert reference.startswith("RSV-")
        assert len(reference) == 12
        assert not set(reference[4:]) & set("01IO")


# ---------------------------------------------------------------------------
# Lifecycle scenarios
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_confirm_then_overlap_rejected(self, service: ReservationService, room, clock) -> None:
        first = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        confirmed = await service.change_status(first.reference, "confirmed")
        assert confirmed.status == "confirmed"

        clock.advance(hours=2)
        with pytest.raises(RoomUnavailable) as exc_info:
            await service.create_reservation(room.id, guest(name="Bikash"), _d(2), _d(4))
        assert exc_info.value.conflicts[0].reference == first.reference
        assert exc_info.value.context["conflicts"][0]["status"] == "confirmed"

    async def test_full_stay_with_charge_and_payment(self, service: ReservationService, room, clock) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(0), _d(2))
        await service.change_status(reservation.reference, "confirmed")
        checked_in = await service.change_status(reservation.reference, "checked_in")
        assert checked_in.checked_in_at == START

        updated = await service.add_custom_charge(reservation.reference, MINIBAR, actor="desk-1")
        assert updated.total_amount == Decimal("21500")
        assert [c.description for c in updated.charges] == ["Minibar"]

        clock.advance(days=2)
        with pytest.raises(PaymentRequired) as exc_info:
            await service.change_status(reservation.reference, "checked_out")
        assert Decimal(exc_info.value.context["outstanding"]) == Decimal("21500")
        assert (await service.get_reservation(reservation.reference)).status == "checked_in"

        paid = await service.set_payment_status(reservation.reference, "paid", actor="desk-1")
        assert paid.status == "checked_in"
        assert paid.paid_at == clock.now

        done = await service.change_status(reservation.reference, "checked_out")
        assert done.status == "checked_out"
        assert done.finalized_at == clock.now

        bill = await service.get_bill(reservation.reference)
        assert isinstance(bill, Bill)
        assert bill.grand_total == Decimal("21500")
        assert bill.finalized is True

        with pytest.raises(LedgerClosed):
            await service.add_custom_charge(reservation.reference, MINIBAR)
        assert (await service.get_bill(reservation.reference)) == bill

    async def test_expired_hold_does_not_block(self, service: ReservationService, room, clock) -> None:
        stale = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        clock.advance(minutes=16)

        fresh = await service.create_reservation(room.id, guest(name="Bikash"), _d(1), _d(3))
        assert fresh.status == "pending"
        assert (await service.get_reservation(stale.reference)).status == "pending"

    async def test_confirm_blocked_by_newer_hold(self, service: ReservationService, room, clock) -> None:
        stale = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        clock.advance(minutes=16)
        fresh = await service.create_reservation(room.id, guest(name="Bikash"), _d(2), _d(4))

        with pytest.raises(RoomUnavailable) as exc_info:
            await service.change_status(stale.reference, "confirmed")
        assert [c.reference for c in exc_info.value.conflicts] == [fresh.reference]

    async def test_expired_hold_can_still_be_confirmed(self, service: ReservationService, room, clock) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        clock.advance(hours=1)
        assert (await service.change_status(reservation.reference, "confirmed")).status == "confirmed"

    async def test_cancel_requires_reason(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        await service.change_status(reservation.reference, "confirmed")

        with pytest.raises(ValidationError):
            await service.change_status(reservation.reference, "cancelled", TransitionContext(reason="  "))
        assert (await service.get_reservation(reservation.reference)).status == "confirmed"

        cancelled = await service.change_status(
            reservation.reference, "cancelled", TransitionContext(actor="desk-1", reason="Flight cancelled")
        )
        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "Flight cancelled"
        assert (await service.check_availability(room.id, _d(1), _d(3))).available

    async def test_check_in_outside_stay(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(3), _d(5))
        await service.change_status(reservation.reference, "confirmed")
        with pytest.raises(ValidationError):
            await service.change_status(reservation.reference, "checked_in")

    async def test_illegal_transitions(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(0), _d(2))
        with pytest.raises(InvalidTransition):
            await service.change_status(reservation.reference, "checked_in")
        with pytest.raises(InvalidTransition):
            await service.change_status(reservation.reference, "pending")

        await service.change_status(reservation.reference, "confirmed")
        await service.change_status(reservation.reference, "checked_in")
        with pytest.raises(InvalidTransition):
            await service.change_status(reservation.reference, "cancelled", TransitionContext(reason="No show"))

    async def test_unknown_reference(self, service: ReservationService, room) -> None:
        with pytest.raises(ReservationNotFound):
            await service.change_status("RSV-NOPE0000", "confirmed")

    async def test_reference_lookup_is_case_insensitive(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        found = await service.get_reservation(f"  {reservation.reference.lower()} ")
        assert found.id == reservation.id

    async def test_payment_status_does_not_change_lifecycle(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        paid = await service.set_payment_status(reservation.reference, "paid")
        assert paid.status == "pending"
        unpaid = await service.set_payment_status(reservation.reference, "unpaid")
        assert unpaid.paid_at is None


# ---------------------------------------------------------------------------
# After-commit side effects
# ---------------------------------------------------------------------------


class TestSideEffects:
    async def test_audit_trail(self, service: ReservationService, room, audit_sink) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(0), _d(1))
        await service.change_status(reservation.reference, "confirmed", TransitionContext(actor="desk-1"))
        await service.add_custom_charge(reservation.reference, MINIBAR, actor="desk-1")
        await service.set_payment_status(reservation.reference, "paid", actor="desk-1")
        await service.set_payment_status(reservation.reference, "paid", actor="desk-1")
        await service.dispatcher.drain()

        assert audit_sink.actions == [
            "reservation.created",
            "reservation.confirm",
            "reservation.charge_added",
            "reservation.payment_updated",
        ]
        confirm = audit_sink.entries[1]
        assert confirm.actor == "desk-1"
        assert confirm.details == {"from": "pending", "to": "confirmed"}

    async def test_failing_audit_sink_does_not_fail_write(
        self, session_factory, room, clock, test_settings, caplog
    ) -> None:
        sink = AsyncMock()
        sink.record.side_effect = RuntimeError("activity log is down")
        service = ReservationService(
            session_factory, audit_sink=sink, clock=clock, dispatcher=BackgroundDispatcher(), settings=test_settings
        )

        with caplog.at_level(logging.ERROR, logger="innkeep.reservations.audit"):
            reservation = await service.create_reservation(room.id, guest(), _d(1), _d(2))
            await service.dispatcher.drain()

        assert (await service.get_reservation(reservation.reference)).status == "pending"
        assert sink.record.await_count == 1
        assert "Background delivery failed" in caplog.text
        assert service.dispatcher.pending == 0

    async def test_final_bill_sent_to_notifier(self, session_factory, room, clock, test_settings) -> None:
        notifier = AsyncMock()
        service = ReservationService(session_factory, notifier=notifier, clock=clock, settings=test_settings)

        reservation = await service.create_reservation(room.id, guest(), _d(0), _d(1))
        await service.change_status(reservation.reference, "confirmed")
        await service.change_status(reservation.reference, "checked_in")
        await service.set_payment_status(reservation.reference, "paid")
        await service.change_status(reservation.reference, "checked_out")
        await service.dispatcher.drain()

        notifier.notify.assert_awaited_once()
        bill = notifier.notify.await_args.args[0]
        assert bill.reference == reservation.reference
        assert bill.status == "checked_out"
        assert bill.finalized is True
        assert bill.grand_total == Decimal("10000")

    async def test_room_status_cache(self, service: ReservationService, room, db_session, clock) -> None:
        assert await _room_status(db_session, room.id) == "available"

        reservation = await service.create_reservation(room.id, guest(), _d(0), _d(1))
        assert await _room_status(db_session, room.id) == "reserved"

        await service.change_status(reservation.reference, "confirmed")
        await service.change_status(reservation.reference, "checked_in")
        assert await _room_status(db_session, room.id) == "occupied"

        await service.set_payment_status(reservation.reference, "paid")
        clock.advance(days=1)
        await service.change_status(reservation.reference, "checked_out")
        assert await _room_status(db_session, room.id) == "available"


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------


class TestStorageFailures:
    async def test_held_reservation_write_rejects_immediately(
        self, service: ReservationService, room, test_engine
    ) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))

        async with test_engine.connect() as conn:
            await conn.execute(
                update(Reservation)
                .where(Reservation.id == reservation.id)
                .values(special_requests="Held by another writer")
            )
            context = TransitionContext(reason="Plans changed")
            cancel = service.change_status(reservation.reference, "cancelled", context)
            with pytest.raises(ConflictOrUnavailable):
                await asyncio.wait_for(cancel, timeout=2)
            await conn.rollback()

        assert (await service.get_reservation(reservation.reference)).status == "pending"

    async def test_storage_error_becomes_conflict_or_unavailable(
        self, service: ReservationService, room, test_engine
    ) -> None:
        async with test_engine.begin() as conn:
            await conn.execute(text("DROP TABLE reservation_charges"))
            await conn.execute(text("DROP TABLE reservations"))

        with pytest.raises(ConflictOrUnavailable):
            await service.create_reservation(room.id, guest(), _d(1), _d(2))

    async def test_stale_reservation_update_is_rejected(
        self, service: ReservationService, room, session_factory
    ) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))

        async with session_factory() as session:
            stale = (
                await session.execute(select(Reservation).where(Reservation.id == reservation.id))
            ).scalar_one()
            await service.change_status(reservation.reference, "confirmed")

            stale.special_requests = "Sea view"
            with pytest.raises(StaleDataError):
                await session.commit()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    async def test_list_with_filters(self, service: ReservationService, room, suite, clock) -> None:
        guest_id = uuid.uuid4()
        first = await service.create_reservation(
            room.id, GuestInfo(name="Asha Rai", email="asha@example.com", guest_id=guest_id), _d(1), _d(2)
        )
        clock.advance(minutes=1)
        second = await service.create_reservation(suite.id, guest(email="bikash@example.com"), _d(5), _d(7))
        clock.advance(minutes=1)
        await service.change_status(first.reference, "confirmed")

        items, total = await service.list_reservations()
        assert total == 2
        assert [r.reference for r in items] == [second.reference, first.reference]

        items, total = await service.list_reservations(ReservationFilters(status="confirmed"))
        assert (total, [r.reference for r in items]) == (1, [first.reference])

        items, total = await service.list_reservations(ReservationFilters(guest_email="BIKASH@example.com"))
        assert [r.reference for r in items] == [second.reference]

        items, total = await service.list_reservations(ReservationFilters(guest_id=guest_id))
        assert (total, [r.reference for r in items]) == (1, [first.reference])

        items, total = await service.list_reservations(ReservationFilters(check_in_from=_d(3)))
        assert [r.reference for r in items] == [second.reference]

        items, total = await service.list_reservations(ReservationFilters(limit=1, skip=1))
        assert total == 2
        assert [r.reference for r in items] == [first.reference]

    async def test_stats(self, service: ReservationService, room, suite) -> None:
        kept = await service.create_reservation(room.id, guest(), _d(1), _d(3))
        dropped = await service.create_reservation(suite.id, guest(), _d(1), _d(2))
        await service.set_payment_status(kept.reference, "paid")
        await service.change_status(dropped.reference, "cancelled", TransitionContext(reason="Duplicate"))

        stats = await service.reservation_stats()
        assert stats["total_reservations"] == 2
        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["cancelled"] == 1
        assert stats["by_status"]["checked_out"] == 0
        assert stats["paid_reservations"] == 1
        assert stats["total_revenue"] == Decimal("20000.00")

    async def test_bill_formats(self, service: ReservationService, room) -> None:
        reservation = await service.create_reservation(room.id, guest(), _d(1), _d(3))

        text_bill = await service.get_bill(reservation.reference, "text")
        assert b"Rs.20,000.00" in text_bill

        json_bill = await service.get_bill(reservation.reference, "json")
        assert json_bill.startswith(b"{")

        with pytest.raises(ValidationError):
            await service.get_bill(reservation.reference, "pdf")
