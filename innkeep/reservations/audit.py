"""Fire-and-forget reporting to the external activity log and bill notifier.

Reservation writes never wait on, or fail because of, these collaborators:
delivery runs as a background task after the write has committed, and any
exception it raises is logged here and dropped.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from innkeep.schemas.bill import Bill

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One reportable action: a transition, a charge, a payment change, a creation."""

    action: str
    actor: str
    reservation: str
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None: ...


class BillNotifier(Protocol):
    """Renders and sends a final bill (PDF, email). Called once per check-out."""

    async def notify(self, bill: Bill) -> None: ...


class LoggingAuditSink:
    """Default sink: writes each entry to the ``innkeep.audit`` logger."""

    def __init__(self, logger_name: str = "innkeep.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    async def record(self, entry: AuditEntry) -> None:
        self._logger.info(
            "%s by %s on %s at %s %s",
            entry.action,
            entry.actor,
            entry.reservation,
            entry.timestamp.isoformat(),
            entry.details or "",
        )


class BackgroundDispatcher:
    """Schedules collaborator calls without awaiting them.

    Tasks are referenced until they finish so the event loop does not
    garbage-collect them mid-flight. :meth:`drain` waits for outstanding
    deliveries (shutdown, tests).
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def submit(self, label: str, call: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(self._run(label, call))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _run(label: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception:
            logger.exception("Background delivery failed: %s", label)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
