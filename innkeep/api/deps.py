"""Shared API dependencies: single import point for all routers.

Re-exports authentication dependencies and provides the reservation service
so that router modules can import everything they need from one place::

    from innkeep.api.deps import get_reservation_service, require_staff
"""

from functools import lru_cache

from innkeep.auth.dependencies import Actor, get_current_actor, require_staff
from innkeep.database import async_session_factory
from innkeep.reservations.service import ReservationService


@lru_cache
def get_reservation_service() -> ReservationService:
    """Process-wide service bound to the configured database."""
    return ReservationService(async_session_factory)


__all__ = [
    "Actor",
    "get_current_actor",
    "get_reservation_service",
    "require_staff",
]
