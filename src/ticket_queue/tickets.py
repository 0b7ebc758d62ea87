"""Fan-out of one task's lifecycle to every ticket submitted for its id."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from ticket_queue.ticket import ProgressSnapshot, Ticket


class TicketGroup:
    """Tickets sharing a task id, kept in submission order."""

    def __init__(self, tickets: list[Ticket] | None = None) -> None:
        self._tickets: list[Ticket] = list(tickets or ())

    def __len__(self) -> int:
        return len(self._tickets)

    def __iter__(self) -> Iterator[Ticket]:
        return iter(list(self._tickets))

    def push(self, member: Ticket | TicketGroup) -> None:
        """Append a ticket, or every ticket of another group, keeping order."""

        if isinstance(member, TicketGroup):
            if member is self:
                return
            self._tickets.extend(member._tickets)
            return
        if member not in self._tickets:
            self._tickets.append(member)

    def accept(self) -> None:
        for ticket in self:
            ticket.accept()

    def queued(self) -> None:
        for ticket in self:
            ticket.queued()

    def started(self, total: int | None = None) -> None:
        for ticket in self:
            ticket.started(total)

    def progress(self, current: int, total: int | None = None) -> ProgressSnapshot | None:
        snapshot: ProgressSnapshot | None = None
        for ticket in self:
            snapshot = ticket.progress(current, total) or snapshot
        return snapshot

    def finish(self, result: Any = None) -> None:
        for ticket in self:
            ticket.finish(result)
        self._tickets.clear()

    def failed(self, reason: object) -> None:
        for ticket in self:
            ticket.failed(reason)
        self._tickets.clear()
