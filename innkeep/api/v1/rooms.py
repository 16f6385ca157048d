"""Rooms API router: availability derived from reservations."""

from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query

from innkeep.api.deps import Actor, get_current_actor, get_reservation_service
from innkeep.models.room import Room
from innkeep.reservations.service import ReservationService
from innkeep.schemas.reservation import AvailabilityResponse, RoomResponse

router = APIRouter(prefix="/api/v1/rooms", tags=["rooms"])


@router.get(
    "/availability",
    response_model=list[RoomResponse],
    summary="Rooms free for a date range",
)
async def available_rooms(
    check_in: date = Query(..., description="First night of the stay"),
    check_out: date = Query(..., description="Departure date (exclusive)"),
    room_type: str | None = Query(None, description="Filter by room type"),
    min_capacity: int | None = Query(None, ge=1, description="Minimum number of guests the room sleeps"),
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(get_current_actor),
) -> list[Room]:
    return await service.search_available_rooms(
        check_in,
        check_out,
        room_type=room_type,
        min_capacity=min_capacity,
    )


@router.get(
    "/{room_id}/availability",
    response_model=AvailabilityResponse,
    summary="Is one room free for a date range?",
)
async def room_availability(
    room_id: uuid.UUID,
    check_in: date = Query(..., description="First night of the stay"),
    check_out: date = Query(..., description="Departure date (exclusive)"),
    exclude: str | None = Query(None, description="Reservation reference to ignore (re-validating a change)"),
    service: ReservationService = Depends(get_reservation_service),
    actor: Actor = Depends(get_current_actor),
) -> dict:
    """Free/blocked for one room, with the blocking reservations when blocked."""
    result = await service.check_availability(room_id, check_in, check_out, exclude)
    return {
        "room_id": room_id,
        "check_in": check_in,
        "check_out": check_out,
        "available": result.available,
        "conflicts": result.conflicts,
    }
