"""Pydantic v2 request/response schemas for reservation and room endpoints."""

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from innkeep.reservations.ledger import ChargeCategory, PaymentStatus
from innkeep.reservations.state_machine import ReservationStatus

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class GuestIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: str | None = Field(None, max_length=50)
    guest_id: uuid.UUID | None = None


class ReservationCreate(BaseModel):
    """Schema for holding a room as a new pending reservation."""

    room_id: uuid.UUID
    guest: GuestIn
    check_in: date
    check_out: date
    adults: int = Field(1, ge=1)
    children: int = Field(0, ge=0)
    special_requests: str | None = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_dates(self) -> "ReservationCreate":
        """Validate that check_out is strictly after check_in."""
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class StatusChange(BaseModel):
    """Target lifecycle status; ``reason`` is required when cancelling."""

    status: ReservationStatus
    reason: str | None = Field(None, max_length=500)


class ChargeCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    category: ChargeCategory = ChargeCategory.OTHER
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class ChargeResponse(BaseModel):
    position: int
    description: str
    category: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    created_by: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationResponse(BaseModel):
    """Reservation as returned by every reservation endpoint."""

    id: uuid.UUID
    reference: str
    room_id: uuid.UUID
    guest_id: uuid.UUID | None = None
    guest_name: str
    guest_email: str
    guest_phone: str | None = None
    created_by: str | None = None
    check_in: date
    check_out: date
    nights: int
    adults: int
    children: int
    special_requests: str | None = None
    status: str
    payment_status: str
    cancellation_reason: str | None = None
    nightly_rate: Decimal
    base_amount: Decimal
    total_amount: Decimal
    charges: list[ChargeResponse] = []
    checked_in_at: datetime | None = None
    checked_out_at: datetime | None = None
    cancelled_at: datetime | None = None
    paid_at: datetime | None = None
    finalized_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationListResponse(BaseModel):
    """Paginated list of reservations."""

    items: list[ReservationResponse]
    total: int


class ReservationStatsResponse(BaseModel):
    total_reservations: int
    by_status: dict[str, int]
    paid_reservations: int
    total_revenue: Decimal


class RoomResponse(BaseModel):
    id: uuid.UUID
    number: str
    room_type: str
    nightly_rate: Decimal
    capacity: int
    status: str

    model_config = ConfigDict(from_attributes=True)


class ConflictResponse(BaseModel):
    reference: str
    status: str
    check_in: date
    check_out: date

    model_config = ConfigDict(from_attributes=True)


class AvailabilityResponse(BaseModel):
    room_id: uuid.UUID
    check_in: date
    check_out: date
    available: bool
    conflicts: list[ConflictResponse]
