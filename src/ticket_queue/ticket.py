"""Per-submission outcome tracker."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ticket_queue.errors import TaskFailedError, reason_text
from ticket_queue.events import EventSource

logger = logging.getLogger(__name__)


class TicketStatus(str, Enum):
    """Ticket lifecycle states, in the only order they can be entered."""

    CREATED = "created"
    ACCEPTED = "accepted"
    QUEUED = "queued"
    STARTED = "started"
    FINISHED = "finished"
    FAILED = "failed"


_RANK = {status: rank for rank, status in enumerate(TicketStatus)}
_RANK[TicketStatus.FAILED] = _RANK[TicketStatus.FINISHED]
TERMINAL_STATUSES = frozenset({TicketStatus.FINISHED, TicketStatus.FAILED})


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Progress as reported to ticket observers."""

    current: int
    total: int | None
    pct: int | None
    eta: str
    elapsed_seconds: float


def format_eta(seconds: float | None) -> str:
    """Render remaining seconds as ``1h 2m 3s``; ``unknown`` when not computable."""

    if seconds is None or math.isinf(seconds) or math.isnan(seconds):
        return "unknown"
    remaining = max(0, int(round(seconds)))
    hours, remainder = divmod(remaining, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes or hours:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def compute_progress(
    *,
    current: int,
    total: int | None,
    elapsed_seconds: float,
) -> ProgressSnapshot:
    """Percent done and ETA for ``current`` of ``total`` after ``elapsed_seconds``."""

    pct: int | None = None
    eta_seconds: float | None = None
    if total:
        pct = math.floor(100 * current / total)
        if current > 0:
            eta_seconds = elapsed_seconds / current * max(0, total - current)
    return ProgressSnapshot(
        current=current,
        total=total,
        pct=pct,
        eta=format_eta(eta_seconds),
        elapsed_seconds=elapsed_seconds,
    )


class Ticket(EventSource):
    """Handle tracking one submission from acceptance to its single outcome.

    Transitions only move forward: a request to enter a state the ticket has
    already reached (or passed) is ignored without notifying anyone. Terminal
    states are entered once; the result or failure reason never changes after.

    Events: ``accepted``, ``queued``, ``started`` (total), ``progress``
    (``ProgressSnapshot``), ``finish`` (result), ``failed`` (reason).
    """

    def __init__(self) -> None:
        super().__init__()
        self.status = TicketStatus.CREATED
        self._visited = {TicketStatus.CREATED}
        self.created_at = time.monotonic()
        self.started_at: float | None = None
        self.current = 0
        self.total: int | None = None
        self.last_progress: ProgressSnapshot | None = None
        self.value: Any = None
        self.reason: str | None = None
        self._resolved = threading.Event()

    def __repr__(self) -> str:
        return f"Ticket(status={self.status.value!r})"

    @property
    def is_accepted(self) -> bool:
        return self._reached(TicketStatus.ACCEPTED)

    @property
    def is_queued(self) -> bool:
        return self._reached(TicketStatus.QUEUED)

    @property
    def is_started(self) -> bool:
        return self._reached(TicketStatus.STARTED)

    @property
    def is_finished(self) -> bool:
        return self.status is TicketStatus.FINISHED

    @property
    def is_failed(self) -> bool:
        return self.status is TicketStatus.FAILED

    @property
    def is_resolved(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def accept(self) -> None:
        if self._advance(TicketStatus.ACCEPTED):
            self.emit("accepted")

    def queued(self) -> None:
        if self._advance(TicketStatus.QUEUED):
            self.emit("queued")

    def started(self, total: int | None = None) -> None:
        if not self._advance(TicketStatus.STARTED):
            return
        self.started_at = time.monotonic()
        self.total = total
        self.emit("started", total)

    def progress(self, current: int, total: int | None = None) -> ProgressSnapshot | None:
        """Record ``current`` units done; only valid once started."""

        if self.status is not TicketStatus.STARTED:
            logger.debug("Ignoring progress on ticket in state %s", self.status.value)
            return None
        if total is not None:
            self.total = total
        self.current = current
        origin = self.started_at if self.started_at is not None else self.created_at
        snapshot = compute_progress(
            current=current,
            total=self.total,
            elapsed_seconds=time.monotonic() - origin,
        )
        self.last_progress = snapshot
        self.emit("progress", snapshot)
        return snapshot

    def finish(self, result: Any = None) -> None:
        if not self._advance(TicketStatus.FINISHED):
            return
        self.value = result
        self._resolved.set()
        self.emit("finish", result)

    def failed(self, reason: object) -> None:
        if not self._advance(TicketStatus.FAILED):
            return
        self.reason = reason_text(reason)
        self._resolved.set()
        self.emit("failed", self.reason)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until resolved; return whether the ticket is resolved."""

        return self._resolved.wait(timeout)

    def result(self, timeout: float | None = None) -> Any:
        """Return the finish result, raising ``TaskFailedError`` on failure."""

        if not self._resolved.wait(timeout):
            raise TimeoutError("ticket not resolved in time")
        if self.status is TicketStatus.FAILED:
            raise TaskFailedError(self.reason or "")
        return self.value

    def _reached(self, status: TicketStatus) -> bool:
        return status in self._visited

    def _advance(self, status: TicketStatus) -> bool:
        if _RANK[self.status] >= _RANK[status]:
            return False
        self.status = status
        self._visited.add(status)
        return True
