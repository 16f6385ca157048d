"""Typed reservation errors.

Every failure the core reports is a :class:`ReservationError` subclass that
carries a stable ``code``, a human-readable message, the HTTP status the API
layer maps it to, and structured ``context`` the UI can render from.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any


class ReservationError(Exception):
    """Base class for every expected, recoverable reservation outcome."""

    code = "reservation_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.context}


class ValidationError(ReservationError):
    """Malformed or out-of-range input (inverted dates, bad quantity, capacity)."""

    code = "validation_error"
    status_code = 400


@dataclass(frozen=True)
class Conflict:
    """An existing reservation whose occupancy interval overlaps a request."""

    reference: str
    status: str
    check_in: date
    check_out: date

    def to_dict(self) -> dict[str, str]:
        return {
            "reference": self.reference,
            "status": self.status,
            "check_in": self.check_in.isoformat(),
            "check_out": self.check_out.isoformat(),
        }


class RoomUnavailable(ReservationError):
    """The room is already held or occupied for part of the requested interval."""

    code = "room_unavailable"
    status_code = 409

    def __init__(self, conflicts: list[Conflict], message: str | None = None) -> None:
        refs = ", ".join(c.reference for c in conflicts)
        super().__init__(
            message or f"Room is not available for the selected dates (conflicts with {refs})",
            conflicts=[c.to_dict() for c in conflicts],
        )
        self.conflicts = conflicts


class InvalidTransition(ReservationError):
    """The requested state change is not in the transition table."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move reservation from '{current}' to '{requested}'",
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class PaymentRequired(ReservationError):
    """Check-out attempted while the bill is unpaid."""

    code = "payment_required"
    status_code = 402

    def __init__(self, reference: str, outstanding: Decimal) -> None:
        super().__init__(
            f"Reservation {reference} must be paid before check-out",
            reference=reference,
            outstanding=str(outstanding),
        )
        self.outstanding = outstanding


class LedgerClosed(ReservationError):
    """Charges or payment changes on a settled or void reservation."""

    code = "ledger_closed"
    status_code = 409

    def __init__(self, reference: str, status: str) -> None:
        super().__init__(
            f"Reservation {reference} is {status}; its bill can no longer change",
            reference=reference,
            status=status,
        )


class ReservationNotFound(ReservationError):
    code = "reservation_not_found"
    status_code = 404

    def __init__(self, reference: str) -> None:
        super().__init__(f"Reservation {reference} not found", reference=reference)


class RoomNotFound(ReservationError):
    code = "room_not_found"
    status_code = 404

    def __init__(self, room_id: Any) -> None:
        super().__init__(f"Room {room_id} not found", room_id=str(room_id))


class ConflictOrUnavailable(ReservationError):
    """Storage failure or a concurrent writer aborted this one. Safe to retry once."""

    code = "conflict_or_unavailable"
    status_code = 503
