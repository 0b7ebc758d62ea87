from __future__ import annotations

import allure
import pytest

from ticket_queue import TaskFailedError, Ticket, TicketStatus
from ticket_queue.ticket import compute_progress, format_eta

pytestmark = [
    allure.epic("Scheduling Engine"),
    allure.feature("Ticket Lifecycle"),
]


def test_ticket_moves_through_lifecycle_states(recorder) -> None:
    ticket = Ticket()
    recorder.attach(ticket, "accepted", "queued", "started", "finish", "failed")
    assert ticket.status is TicketStatus.CREATED
    assert not ticket.is_accepted

    ticket.accept()
    assert ticket.is_accepted
    ticket.queued()
    assert ticket.is_queued
    ticket.started(3)
    assert ticket.is_started
    assert ticket.total == 3
    ticket.finish({"x": 1})

    assert ticket.is_finished
    assert ticket.value == {"x": 1}
    assert recorder.names() == ["accepted", "queued", "started", "finish"]
    assert recorder.args("finish") == [({"x": 1},)]


def test_ticket_ignores_backward_and_repeated_transitions(recorder) -> None:
    ticket = Ticket()
    recorder.attach(ticket, "accepted", "queued", "started")
    ticket.accept()
    ticket.queued()
    ticket.started()
    ticket.queued()
    ticket.accept()
    ticket.started()

    assert ticket.status is TicketStatus.STARTED
    assert recorder.names() == ["accepted", "queued", "started"]


def test_ticket_resolves_only_once(recorder) -> None:
    ticket = Ticket()
    recorder.attach(ticket, "finish", "failed")
    ticket.accept()
    ticket.failed("some_error")
    ticket.finish("late")
    ticket.failed("another_error")

    assert ticket.is_failed
    assert ticket.reason == "some_error"
    assert ticket.value is None
    assert recorder.names() == ["failed"]


def test_rejected_ticket_is_failed_but_never_accepted() -> None:
    ticket = Ticket()
    ticket.failed("input_rejected")

    assert ticket.is_failed
    assert not ticket.is_accepted
    assert not ticket.is_queued


def test_progress_reports_percent_and_eta(recorder) -> None:
    ticket = Ticket()
    recorder.attach(ticket, "progress")
    ticket.accept()
    ticket.queued()
    ticket.started(2)

    first = ticket.progress(1)
    second = ticket.progress(2)

    assert first is not None and second is not None
    assert first.pct == 50
    assert first.current == 1
    assert isinstance(first.eta, str)
    assert second.pct == 100
    assert second.current == 2
    assert second.total == 2
    assert second.eta == "0s"
    assert [args[0] for args in recorder.args("progress")] == [first, second]


def test_progress_without_total_omits_percent() -> None:
    ticket = Ticket()
    ticket.started()

    snapshot = ticket.progress(4)

    assert snapshot is not None
    assert snapshot.pct is None
    assert snapshot.eta == "unknown"


def test_progress_before_start_is_ignored(recorder) -> None:
    ticket = Ticket()
    recorder.attach(ticket, "progress")
    ticket.accept()

    assert ticket.progress(1) is None
    assert recorder.count("progress") == 0


def test_result_returns_value_or_raises_failure_reason() -> None:
    finished = Ticket()
    finished.finish(42)
    assert finished.result(timeout=0) == 42

    failed = Ticket()
    failed.failed("task_timeout")
    with pytest.raises(TaskFailedError, match="task_timeout") as excinfo:
        failed.result(timeout=0)
    assert excinfo.value.reason == "task_timeout"


def test_result_times_out_for_unresolved_ticket() -> None:
    ticket = Ticket()
    assert ticket.wait(timeout=0.01) is False
    with pytest.raises(TimeoutError):
        ticket.result(timeout=0.01)


def test_compute_progress_floors_percent_and_projects_remaining_time() -> None:
    snapshot = compute_progress(current=1, total=3, elapsed_seconds=2.0)

    assert snapshot.pct == 33
    assert snapshot.eta == "4s"


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (None, "unknown"),
        (0, "0s"),
        (5.4, "5s"),
        (65, "1m 5s"),
        (3725, "1h 2m 5s"),
        (3600, "1h 0m 0s"),
        (float("inf"), "unknown"),
    ],
)
def test_format_eta(seconds, expected) -> None:
    assert format_eta(seconds) == expected
