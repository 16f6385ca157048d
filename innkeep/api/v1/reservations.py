"""Reservations API router.

Guests and staff may create reservations. Reading a reservation or its bill
is limited to staff and the guest who booked it. Lifecycle changes,
charges, payment updates, listings and statistics are staff-only. Typed
reservation errors raised by the service are turned into responses by the
handler registered in :mod:`innkeep.main`.
"""

from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from innkeep.api.deps import Actor, get_current_actor, get_reservation_service, require_staff
from innkeep.models.reservation import Reservation
from innkeep.reservations.ledger import NewCharge
from innkeep.reservations.service import (
    GuestCount,
    GuestInfo,
    ReservationFilters,
    ReservationService,
    TransitionContext,
)
from innkeep.schemas.bill import Bill
from innkeep.schemas.reservation import (
    ChargeCreate,
    PaymentUpdate,
    ReservationCreate,
    ReservationListResponse,
    ReservationResponse,
    ReservationStatsResponse,
    StatusChange,
)

router = APIRouter(prefix="/api/v1/reservations", tags=["reservations"])

_MEDIA_TYPES = {
    "json": "application/json",
    "text": "text/plain; charset=utf-8",
    "pdf": "application/pdf",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _get_reservation_for_actor(
    reference: str,
    actor: Actor,
    service: ReservationService,
) -> Reservation:
    """Fetch a reservation and verify the actor may see it.

    Staff see every reservation; a guest sees only the ones they booked.
    Raises ``HTTPException 403`` otherwise.
    """
    reservation = await service.get_reservation(reference)
    if actor.is_staff:
        return reservation
    owners = {reservation.created_by, str(reservation.guest_id) if reservation.guest_id else None}
    if actor.id not in owners:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to view this reservation",
        )
    return reservation


@router.post(
    "",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Hold a room as a new pending reservation",
)
async def create_reservation(
    body: ReservationCreate,
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(get_current_actor),
) -> Reservation:
    """Create a pending reservation.

    Returns 409 with the conflicting references when the room is held or
    occupied for any night of the requested stay.
    """
    return await service.create_reservation(
        body.room_id,
        GuestInfo(
            name=body.guest.name,
            email=body.guest.email,
            phone=body.guest.phone,
            guest_id=body.guest.guest_id,
        ),
        body.check_in,
        body.check_out,
        GuestCount(adults=body.adults, children=body.children),
        special_requests=body.special_requests,
        actor=actor.id,
    )


@router.get(
    "",
    response_model=ReservationListResponse,
    summary="List reservations",
)
async def list_reservations(
    status_filter: str | None = Query(None, alias="status", description="Filter by reservation status"),
    payment_status: str | None = Query(None, description="Filter by payment status"),
    room_id: uuid.UUID | None = Query(None, description="Filter by room"),
    guest_id: uuid.UUID | None = Query(None, description="Filter by guest id"),
    guest_email: str | None = Query(None, description="Filter by guest email"),
    check_in_from: date | None = Query(None, description="Reservations with check_in >= this date"),
    check_in_to: date | None = Query(None, description="Reservations with check_in <= this date"),
    skip: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(20, ge=1, le=100, description="Pagination limit"),
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(require_staff),
) -> dict:
    """Return a newest-first page of reservations and the total match count."""
    items, total = await service.list_reservations(
        ReservationFilters(
            status=status_filter,
            payment_status=payment_status,
            room_id=room_id,
            guest_id=guest_id,
            guest_email=guest_email,
            check_in_from=check_in_from,
            check_in_to=check_in_to,
            skip=skip,
            limit=limit,
        )
    )
    return {"items": items, "total": total}


@router.get(
    "/stats",
    response_model=ReservationStatsResponse,
    summary="Reservation counts and revenue",
)
async def reservation_stats(
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(require_staff),
) -> dict:
    return await service.reservation_stats()


@router.get(
    "/{reference}",
    response_model=ReservationResponse,
    summary="Get a reservation by reference",
)
async def get_reservation(
    reference: str,
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(get_current_actor),
) -> Reservation:
    return await _get_reservation_for_actor(reference, actor, service)


@router.post(
    "/{reference}/status",
    response_model=ReservationResponse,
    summary="Confirm, check in, check out, or cancel a reservation",
)
async def change_status(
    reference: str,
    body: StatusChange,
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(require_staff),
) -> Reservation:
    """Apply one lifecycle transition.

    Returns 409 for illegal transitions or availability conflicts, 402 when
    checking out an unpaid stay, and 400 when a cancellation has no reason.
    """
    return await service.change_status(
        reference,
        body.status,
        TransitionContext(actor=actor.id, reason=body.reason),
    )


@router.post(
    "/{reference}/charges",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add an ad-hoc charge",
)
async def add_charge(
    reference: str,
    body: ChargeCreate,
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(require_staff),
) -> Reservation:
    return await service.add_custom_charge(
        reference,
        NewCharge(
            description=body.description,
            category=body.category,
            quantity=body.quantity,
            unit_price=body.unit_price,
        ),
        actor=actor.id,
    )


@router.put(
    "/{reference}/payment",
    response_model=ReservationResponse,
    summary="Mark a reservation paid or unpaid",
)
async def update_payment(
    reference: str,
    body: PaymentUpdate,
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(require_staff),
) -> Reservation:
    return await service.set_payment_status(reference, body.payment_status, actor=actor.id)


@router.get(
    "/{reference}/bill",
    response_model=Bill,
    summary="Current bill for a reservation",
)
async def get_bill(
    reference: str,
    fmt: str = Query("data", alias="format", description="data, json, text, or a registered renderer"),
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(get_current_actor),
):
    """Return the bill projection, or its rendering in the requested format."""
    reservation = await _get_reservation_for_actor(reference, actor, service)
    rendered = await service.get_bill(reservation.reference, fmt)
    if isinstance(rendered, Bill):
        return rendered
    return Response(
        content=rendered,
        media_type=_MEDIA_TYPES.get(fmt.lower(), "application/octet-stream"),
    )
