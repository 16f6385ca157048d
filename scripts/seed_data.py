"""Seed the database with sample rooms and reservations for local development.

Every reservation is driven through ReservationService so seeded data obeys
the same availability, billing and lifecycle rules as live traffic. Past
stays are replayed with the service clock set back to their dates.

Run from the repository root:
    python -m scripts.seed_data
"""

import asyncio
import sys
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path

# Add the repository root to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import delete

from innkeep.database import Base, async_session_factory, engine
from innkeep.models.reservation import Charge, Reservation
from innkeep.models.room import Room
from innkeep.reservations.ledger import NewCharge
from innkeep.reservations.service import GuestCount, GuestInfo, ReservationService, TransitionContext

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

ROOMS = [
    {"number": "101", "room_type": "single", "nightly_rate": Decimal("6500.00"), "capacity": 1},
    {"number": "102", "room_type": "double", "nightly_rate": Decimal("10000.00"), "capacity": 2},
    {"number": "103", "room_type": "double", "nightly_rate": Decimal("10000.00"), "capacity": 2},
    {"number": "201", "room_type": "family", "nightly_rate": Decimal("16000.00"), "capacity": 4},
    {"number": "301", "room_type": "suite", "nightly_rate": Decimal("25000.00"), "capacity": 3},
]

GUESTS = {
    "asha": GuestInfo(name="Asha Rai", email="asha.rai@example.com", phone="+977-98-0000-0001"),
    "james": GuestInfo(name="James Wilson", email="james.wilson@example.com", phone="+44-7700-900001"),
    "yuki": GuestInfo(name="Yuki Tanaka", email="yuki.tanaka@example.com", phone="+81-90-0000-0001"),
    "marie": GuestInfo(name="Marie Dubois", email="marie.dubois@example.com"),
    "bikash": GuestInfo(name="Bikash Gurung", email="bikash.gurung@example.com", phone="+977-98-0000-0002"),
}

# (room, guest, check_in offset, nights, adults, children, final status, charges)
STAYS = [
    ("102", "james", -30, 5, 2, 0, "checked_out", [("Laundry", "laundry", 2, "450")]),
    (
        "201", "yuki", -20, 4, 2, 2, "checked_out",
        [("Minibar", "minibar", 3, "350"), ("Late check-out", "late_checkout", 1, "3000")],
    ),
    ("103", "marie", -10, 3, 1, 0, "cancelled", []),
    ("102", "asha", -2, 5, 2, 0, "checked_in", [("Room service dinner", "room_service", 1, "2200")]),
    ("301", "bikash", 0, 2, 2, 0, "checked_in", []),
    ("201", "asha", 7, 3, 2, 1, "confirmed", []),
    ("101", "marie", 14, 2, 1, 0, "pending", []),
]


class ReplayClock:
    """Service clock that can be set back to replay past stays."""

    def __init__(self) -> None:
        self.now = datetime.combine(date.today(), time(9, 0))

    def __call__(self) -> datetime:
        return self.now

    def at(self, day: date, hour: int = 9) -> None:
        self.now = datetime.combine(day, time(hour, 0))


async def _replay(
    service: ReservationService,
    clock: ReplayClock,
    rooms: dict[str, Room],
    stay: tuple,
    today: date,
) -> Reservation:
    room_number, guest_key, offset, nights, adults, children, final_status, charges = stay
    check_in = today + timedelta(days=offset)
    check_out = check_in + timedelta(days=nights)

    # Past and current stays were booked a week ahead; future ones are booked today.
    clock.at(check_in - timedelta(days=7) if offset <= 0 else today)
    reservation = await service.create_reservation(
        rooms[room_number].id,
        GUESTS[guest_key],
        check_in,
        check_out,
        GuestCount(adults=adults, children=children),
        actor="seed",
    )
    if final_status == "pending":
        return reservation

    ref = reservation.reference
    await service.change_status(ref, "confirmed", TransitionContext(actor="seed"))
    if final_status == "cancelled":
        return await service.change_status(ref, "cancelled", TransitionContext(actor="seed", reason="Guest request"))
    if final_status == "confirmed":
        return reservation

    clock.at(check_in, 14)
    await service.change_status(ref, "checked_in", TransitionContext(actor="seed"))
    for description, category, quantity, unit_price in charges:
        charge = NewCharge(description, category, quantity, Decimal(unit_price))
        await service.add_custom_charge(ref, charge, actor="seed")
    if final_status == "checked_in":
        return reservation

    clock.at(check_out, 11)
    await service.set_payment_status(ref, "paid", actor="seed")
    return await service.change_status(ref, "checked_out", TransitionContext(actor="seed"))


async def seed() -> None:
    """Create tables if needed, wipe reservation data, and insert sample rooms and stays."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as session:
        async with session.begin():
            # Delete in dependency order: charges -> reservations -> rooms
            await session.execute(delete(Charge))
            await session.execute(delete(Reservation))
            await session.execute(delete(Room))

            rooms = {data["number"]: Room(**data) for data in ROOMS}
            session.add_all(rooms.values())

    for room in rooms.values():
        print(f"   🛏  Room {room.number} ({room.room_type}, sleeps {room.capacity}) at {room.nightly_rate}/night")

    clock = ReplayClock()
    service = ReservationService(async_session_factory, clock=clock)
    today = date.today()

    for stay in STAYS:
        reservation = await _replay(service, clock, rooms, stay, today)
        print(f"   📅 {reservation.reference} room {stay[0]} {stay[2]:+d}d x{stay[3]} -> {stay[6]}")

    await service.dispatcher.drain()
    stats = await service.reservation_stats()

    print()
    print("=" * 60)
    print("📊 Seed Summary")
    print("=" * 60)
    print(f"   Rooms:         {len(rooms)}")
    print(f"   Reservations:  {stats['total_reservations']}")
    for status, count in stats["by_status"].items():
        print(f"     {status:<12} {count}")
    print(f"   Revenue:       {stats['total_revenue']}")
    print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
