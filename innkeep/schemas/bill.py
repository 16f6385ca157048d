"""Bill projection: a read-only snapshot of a reservation's charges and totals."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class BillLine(BaseModel):
    """One line of the bill. The room line always comes first."""

    model_config = ConfigDict(frozen=True)

    description: str
    category: str  # room, or one of ChargeCategory
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class Bill(BaseModel):
    """Derived from a reservation; never stored.

    Two bills generated from the same reservation state compare equal and
    serialize to identical bytes.
    """

    model_config = ConfigDict(frozen=True)

    reference: str
    guest_name: str
    guest_email: str
    room_number: str
    check_in: date
    check_out: date
    nights: int
    lines: tuple[BillLine, ...]
    base_amount: Decimal
    charges_total: Decimal
    subtotal: Decimal
    service_charge_rate: Decimal
    service_charge: Decimal
    tax_rate: Decimal
    tax: Decimal
    grand_total: Decimal
    payment_status: str
    status: str
    finalized: bool
    issued_at: datetime
