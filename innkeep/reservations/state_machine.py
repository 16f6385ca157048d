"""Reservation lifecycle: states, events, and the legal transition table.

::

    pending ──confirm──▶ confirmed ──check_in──▶ checked_in ──check_out──▶ checked_out
       │                     │
       └──────cancel─────────┴──────────▶ cancelled

Anything not in :data:`TRANSITIONS` is rejected with
:class:`~innkeep.errors.InvalidTransition`. Preconditions that need storage
(availability, payment) are enforced by the reservation service; this module
only knows which moves exist.
"""

import enum

from innkeep.errors import InvalidTransition


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"


class ReservationEvent(str, enum.Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"


TRANSITIONS: dict[tuple[ReservationStatus, ReservationEvent], ReservationStatus] = {
    (ReservationStatus.PENDING, ReservationEvent.CONFIRM): ReservationStatus.CONFIRMED,
    (ReservationStatus.PENDING, ReservationEvent.CANCEL): ReservationStatus.CANCELLED,
    (ReservationStatus.CONFIRMED, ReservationEvent.CANCEL): ReservationStatus.CANCELLED,
    (ReservationStatus.CONFIRMED, ReservationEvent.CHECK_IN): ReservationStatus.CHECKED_IN,
    (ReservationStatus.CHECKED_IN, ReservationEvent.CHECK_OUT): ReservationStatus.CHECKED_OUT,
}

# Target status -> the event that produces it.
EVENT_FOR_TARGET: dict[ReservationStatus, ReservationEvent] = {
    target: event for (_, event), target in TRANSITIONS.items()
}

# Statuses whose occupancy always blocks the room.
OCCUPYING_STATUSES = frozenset({ReservationStatus.CONFIRMED.value, ReservationStatus.CHECKED_IN.value})

TERMINAL_STATUSES = frozenset({ReservationStatus.CHECKED_OUT.value, ReservationStatus.CANCELLED.value})


def coerce_status(value: "ReservationStatus | str") -> ReservationStatus:
    """Parse a status name, raising ``InvalidTransition`` for unknown names."""
    if isinstance(value, ReservationStatus):
        return value
    try:
        return ReservationStatus(value)
    except ValueError:
        raise InvalidTransition("unknown", str(value)) from None


def next_status(current: ReservationStatus, event: ReservationEvent) -> ReservationStatus:
    """Return the status ``event`` leads to from ``current``."""
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransition(current.value, event.value) from None


def resolve_transition(
    current: "ReservationStatus | str", target: "ReservationStatus | str"
) -> ReservationEvent:
    """Map a requested target status to the event that reaches it from ``current``.

    Raises:
        InvalidTransition: if no row of the table leads from ``current`` to ``target``
            (this includes same-state requests such as confirmed -> confirmed).
    """
    current = coerce_status(current)
    try:
        target = coerce_status(target)
    except InvalidTransition:
        raise InvalidTransition(current.value, str(target)) from None

    event = EVENT_FOR_TARGET.get(target)
    if event is None or (current, event) not in TRANSITIONS:
        raise InvalidTransition(current.value, target.value)
    return event


def allowed_targets(current: ReservationStatus) -> list[ReservationStatus]:
    """Statuses reachable from ``current`` in one step, in table order."""
    return [target for (source, _), target in TRANSITIONS.items() if source == current]
