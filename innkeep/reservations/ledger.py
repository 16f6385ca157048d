"""Billing ledger: charge lines, derived totals, payment status, and the bill projection.

All arithmetic uses :class:`decimal.Decimal`. Nothing here rounds; amounts
are quantized to two places only by :func:`format_amount` at display time.
"""

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from innkeep.errors import LedgerClosed, ValidationError
from innkeep.models.reservation import Charge, Reservation
from innkeep.reservations.state_machine import ReservationStatus
from innkeep.schemas.bill import Bill, BillLine

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0")


class ChargeCategory(str, enum.Enum):
    MINIBAR = "minibar"
    LAUNDRY = "laundry"
    ROOM_SERVICE = "room_service"
    LATE_CHECKOUT = "late_checkout"
    DAMAGES = "damages"
    OTHER = "other"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


# Once a reservation reaches one of these, its charge list is frozen.
CLOSED_STATUSES = frozenset({ReservationStatus.CHECKED_OUT.value, ReservationStatus.CANCELLED.value})


@dataclass(frozen=True)
class NewCharge:
    """An ad-hoc charge as submitted, before it joins a reservation."""

    description: str
    category: ChargeCategory | str
    quantity: int
    unit_price: Decimal | int | str

    @property
    def line_total(self) -> Decimal:
        return self.quantity * Decimal(self.unit_price)


def validate_charge(charge: NewCharge) -> NewCharge:
    """Return a normalized copy of ``charge`` or raise ``ValidationError``."""
    description = (charge.description or "").strip()
    if not description:
        raise ValidationError("Charge description is required", field="description")

    try:
        category = ChargeCategory(charge.category)
    except ValueError:
        raise ValidationError(
            f"Unknown charge category '{charge.category}'",
            field="category",
            allowed=[c.value for c in ChargeCategory],
        ) from None

    if isinstance(charge.quantity, bool) or not isinstance(charge.quantity, int) or charge.quantity < 1:
        raise ValidationError("Charge quantity must be a whole number of at least 1", field="quantity")

    try:
        unit_price = Decimal(str(charge.unit_price))
    except InvalidOperation:
        raise ValidationError(f"Invalid unit price '{charge.unit_price}'", field="unit_price") from None
    if not unit_price.is_finite() or unit_price < 0:
        raise ValidationError("Charge unit price cannot be negative", field="unit_price")

    return NewCharge(description=description, category=category, quantity=charge.quantity, unit_price=unit_price)


def compute_total(base_amount: Decimal, charges: Iterable[Charge | NewCharge]) -> Decimal:
    """``base_amount`` plus every line's ``quantity × unit_price``."""
    return base_amount + sum((c.quantity * Decimal(c.unit_price) for c in charges), ZERO)


def compute_base_amount(nightly_rate: Decimal, nights: int) -> Decimal:
    return nightly_rate * nights


def ensure_open(reservation: Reservation) -> None:
    if reservation.status in CLOSED_STATUSES:
        raise LedgerClosed(reservation.reference, reservation.status)


def add_charge(reservation: Reservation, charge: NewCharge, *, actor: str, now: datetime) -> Charge:
    """Append ``charge`` to the reservation and recompute its total in the same write."""
    ensure_open(reservation)
    charge = validate_charge(charge)

    line = Charge(
        position=len(reservation.charges),
        description=charge.description,
        category=ChargeCategory(charge.category).value,
        quantity=charge.quantity,
        unit_price=Decimal(charge.unit_price),
        created_by=actor,
        created_at=now,
    )
    reservation.charges.append(line)
    reservation.total_amount = compute_total(reservation.base_amount, reservation.charges)
    reservation.updated_at = now
    logger.debug(
        "Added %s charge to %s, total now %s", line.category, reservation.reference, reservation.total_amount
    )
    return line


def set_payment_status(reservation: Reservation, status: PaymentStatus | str, *, now: datetime) -> None:
    """Flip ``unpaid ⇄ paid``. Never changes the reservation's lifecycle status."""
    try:
        status = PaymentStatus(status)
    except ValueError:
        raise ValidationError(
            f"Unknown payment status '{status}'",
            field="payment_status",
            allowed=[s.value for s in PaymentStatus],
        ) from None

    # Un-paying a settled stay would break "checked_out implies paid".
    if reservation.status == ReservationStatus.CHECKED_OUT.value:
        raise LedgerClosed(reservation.reference, reservation.status)

    if reservation.payment_status == status.value:
        return
    reservation.payment_status = status.value
    reservation.paid_at = now if status is PaymentStatus.PAID else None
    reservation.updated_at = now


def finalize(reservation: Reservation, *, now: datetime) -> None:
    """Freeze the charge list; the total is re-derived one last time first."""
    reservation.total_amount = compute_total(reservation.base_amount, reservation.charges)
    reservation.finalized_at = now


def generate_bill(
    reservation: Reservation,
    *,
    service_charge_rate: Decimal = ZERO,
    tax_rate: Decimal = ZERO,
) -> Bill:
    """Project the reservation's current state into a :class:`Bill`.

    Pure: reads nothing but ``reservation`` and the rates, so the same state
    always yields an equal bill. Service charge applies to the subtotal and
    tax applies to subtotal plus service charge.
    """
    room_number = reservation.room.number if reservation.room is not None else ""
    nights = reservation.nights

    lines = [
        BillLine(
            description=f"Room {room_number} ({nights} night{'s' if nights != 1 else ''})",
            category="room",
            quantity=nights,
            unit_price=reservation.nightly_rate,
            line_total=reservation.base_amount,
        )
    ]
    for charge in sorted(reservation.charges, key=lambda c: c.position):
        lines.append(
            BillLine(
                description=charge.description,
                category=charge.category,
                quantity=charge.quantity,
                unit_price=charge.unit_price,
                line_total=charge.line_total,
            )
        )

    charges_total = sum((c.line_total for c in reservation.charges), ZERO)
    subtotal = reservation.base_amount + charges_total
    service_charge = subtotal * service_charge_rate
    tax = (subtotal + service_charge) * tax_rate

    return Bill(
        reference=reservation.reference,
        guest_name=reservation.guest_name,
        guest_email=reservation.guest_email,
        room_number=room_number,
        check_in=reservation.check_in,
        check_out=reservation.check_out,
        nights=nights,
        lines=tuple(lines),
        base_amount=reservation.base_amount,
        charges_total=charges_total,
        subtotal=subtotal,
        service_charge_rate=service_charge_rate,
        service_charge=service_charge,
        tax_rate=tax_rate,
        tax=tax,
        grand_total=subtotal + service_charge + tax,
        payment_status=reservation.payment_status,
        status=reservation.status,
        finalized=reservation.finalized_at is not None,
        issued_at=reservation.finalized_at or reservation.updated_at,
    )


def format_amount(amount: Decimal, currency_label: str = "") -> str:
    """Display form of an amount: two decimal places, half-up, thousands separators."""
    value = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    text = f"{value:,.2f}"
    return f"{currency_label}{text}" if currency_label else text
