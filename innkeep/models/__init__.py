"""SQLAlchemy models for Innkeep.

All models are imported here so that ``Base.metadata`` knows every table.
If you add a new model, import it in this file.
"""

from innkeep.models.reservation import Charge, Reservation
from innkeep.models.room import Room

__all__ = [
    "Charge",
    "Reservation",
    "Room",
]
