from __future__ import annotations

import allure

from ticket_queue import Ticket, TicketGroup

pytestmark = [
    allure.epic("Scheduling Engine"),
    allure.feature("Ticket Lifecycle"),
]


def test_group_broadcasts_terminal_outcome_in_submission_order() -> None:
    order: list[str] = []
    first, second, third = Ticket(), Ticket(), Ticket()
    first.on("finish", lambda result: order.append(f"first:{result}"))
    second.on("finish", lambda result: order.append(f"second:{result}"))
    third.on("finish", lambda result: order.append(f"third:{result}"))
    group = TicketGroup()
    for ticket in (first, second, third):
        group.push(ticket)

    group.started(1)
    group.finish("ok")

    assert order == ["first:ok", "second:ok", "third:ok"]
    assert all(ticket.value == "ok" for ticket in (first, second, third))
    assert len(group) == 0


def test_group_failure_reaches_every_member() -> None:
    tickets = [Ticket(), Ticket()]
    group = TicketGroup(tickets)

    group.failed("task_timeout")

    assert [ticket.reason for ticket in tickets] == ["task_timeout", "task_timeout"]


def test_group_progress_reaches_started_members() -> None:
    tickets = [Ticket(), Ticket()]
    group = TicketGroup(tickets)
    group.started(4)

    snapshot = group.progress(1)

    assert snapshot is not None
    assert snapshot.pct == 25
    assert [ticket.current for ticket in tickets] == [1, 1]


def test_pushing_a_group_appends_its_tickets_once() -> None:
    a, b, c = Ticket(), Ticket(), Ticket()
    group = TicketGroup([a])
    other = TicketGroup([b, c])

    group.push(other)
    group.push(a)
    group.push(group)

    assert list(group) == [a, b, c]
