from __future__ import annotations

import threading

import allure
import pytest

from ticket_queue import (
    MemoryStore,
    QueueConfigError,
    StoreCapabilityError,
    TaskFailedError,
    TaskQueue,
    UnknownStoreError,
)

pytestmark = [
    allure.epic("Scheduling Engine"),
    allure.feature("Submission & Merge"),
]


class FailingStore(MemoryStore):
    def __init__(self, *, fail_put: bool = False, fail_get: bool = False) -> None:
        super().__init__()
        self.fail_put = fail_put
        self.fail_get = fail_get

    def put_task(self, task_id, task, priority=None) -> None:
        if self.fail_put:
            raise OSError("disk full")
        super().put_task(task_id, task, priority)

    def get_task(self, task_id):
        if self.fail_get:
            raise OSError("read error")
        return super().get_task(task_id)


class RetryPutFailingStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.puts = 0

    def put_task(self, task_id, task, priority=None) -> None:
        self.puts += 1
        if self.puts > 1:
            raise OSError("disk full")
        super().put_task(task_id, task, priority)

def test_submit_resolves_ticket_with_process_result(make_queue, recorder) -> None:
    queue = make_queue(lambda task, ctx: task["value"] * 2)
    recorder.attach(queue, "task_accepted", "task_queued", "task_started", "task_finish")
    ticket = queue.submit({"id": "a", "value": 21})

    assert ticket.result(timeout=5) == 42
    assert ticket.is_accepted and ticket.is_queued and ticket.is_started
    assert recorder.wait_for("task_finish")
    assert recorder.args("task_finish") == [("a", 42)]
    assert recorder.names()[:3] == ["task_accepted", "task_queued", "task_started"]


def test_submit_callback_receives_result_and_failure(make_queue) -> None:
    outcomes: list[tuple[object, object]] = []
    done = threading.Event()

    def callback(error, result) -> None:
        outcomes.append((error, result))
        if len(outcomes) == 2:
            done.set()

    def process(task, ctx):
        if task["fail"]:
            raise RuntimeError("user said no")
        return "ok"

    queue = make_queue(process)
    queue.submit({"id": "good", "fail": False}, callback)
    queue.submit({"id": "bad", "fail": True}, callback)

    assert done.wait(5)
    results = [result for error, result in outcomes if error is None]
    errors = [error for error, _ in outcomes if error is not None]
    assert results == ["ok"]
    assert isinstance(errors[0], TaskFailedError)
    assert errors[0].reason == "user said no"


def test_task_id_comes_from_kwarg_then_payload_then_generated(make_queue, recorder) -> None:
    queue = make_queue(lambda task, ctx: None)
    recorder.attach(queue, "task_finish")
    tickets = [
        queue.submit({"value": 1}, task_id="explicit"),
        queue.submit({"id": 7}),
        queue.submit({"value": 3}),
    ]
    for ticket in tickets:
        ticket.result(timeout=5)

    assert recorder.wait_for("task_finish", 3)
    ids = [args[0] for args in recorder.args("task_finish")]
    assert ids[:2] == ["explicit", "7"]
    assert len(ids[2]) == 32


@pytest.mark.parametrize("filtered", [None, False])
def test_filter_rejection_fails_ticket_without_store_write(make_queue, filtered) -> None:
    store = MemoryStore()
    queue = make_queue(lambda task, ctx: "never", filter=lambda value: filtered, store=store)
    ticket = queue.submit({"id": "a"})

    assert ticket.wait(5)
    assert ticket.reason == "input_rejected"
    assert not ticket.is_accepted
    assert len(store) == 0


def test_filter_exception_rejects_input(make_queue) -> None:
    def strict(value):
        raise ValueError("not allowed")

    queue = make_queue(lambda task, ctx: "never", filter=strict)
    ticket = queue.submit("x")

    with pytest.raises(TaskFailedError, match="input_rejected"):
        ticket.result(timeout=5)


def test_filter_can_transform_input(make_queue) -> None:
    queue = make_queue(
        lambda task, ctx: task["n"] + 1,
        filter=lambda value: {"id": f"n-{value}", "n": value},
    )

    assert queue.submit(41).result(timeout=5) == 42


def test_merge_combines_pending_submissions_into_one_entry(make_queue, wait_until) -> None:
    calls: list[dict] = []
    store = MemoryStore()
    queue = make_queue(
        lambda task, ctx: calls.append(task) or task["value"],
        merge=lambda existing, incoming: incoming,
        store=store,
    )
    queue.pause()
    first = queue.submit({"id": "a", "value": 1})
    second = queue.submit({"id": "a", "value": 2})

    assert wait_until(lambda: second.is_queued)
    assert len(store) == 1
    queue.resume()

    assert first.result(timeout=5) == 2
    assert second.result(timeout=5) == 2
    assert calls == [{"id": "a", "value": 2}]


def test_merge_without_replacement_attaches_ticket_to_pending_entry(make_queue, wait_until) -> None:
    calls: list[dict] = []
    store = MemoryStore()
    queue = make_queue(
        lambda task, ctx: calls.append(task) or task["value"],
        merge=lambda existing, incoming: None,
        store=store,
    )
    queue.pause()
    first = queue.submit({"id": "a", "value": 1})
    second = queue.submit({"id": "a", "value": 2})
    third = queue.submit({"id": "a", "value": 3})

    assert wait_until(lambda: third.is_queued)
    assert len(store) == 1
    queue.resume()

    # No independent resolution: every ticket rides on the first entry's outcome.
    assert [ticket.result(timeout=5) for ticket in (first, second, third)] == [1, 1, 1]
    assert calls == [{"id": "a", "value": 1}]


def test_merge_failure_only_fails_the_incoming_ticket(make_queue) -> None:
    def merge(existing, incoming):
        raise ValueError("incompatible")

    queue = make_queue(lambda task, ctx: task["value"], merge=merge)
    queue.pause()
    first = queue.submit({"id": "a", "value": 1})
    second = queue.submit({"id": "a", "value": 2})

    assert second.wait(5)
    assert second.reason == "failed_task_merge"
    queue.resume()
    assert first.result(timeout=5) == 1


def test_priority_failure_fails_ticket(make_queue) -> None:
    def priority(task):
        raise KeyError("rank")

    queue = make_queue(lambda task, ctx: "never", priority=priority)
    ticket = queue.submit({"id": "a"})

    assert ticket.wait(5)
    assert ticket.reason == "failed_to_prioritize"


def test_priority_orders_pending_tasks(make_queue) -> None:
    order: list[str] = []
    queue = make_queue(
        lambda task, ctx: order.append(task["id"]),
        priority=lambda task: task["rank"],
    )
    queue.pause()
    tickets = [
        queue.submit({"id": "low", "rank": 1}),
        queue.submit({"id": "high", "rank": 9}),
        queue.submit({"id": "mid", "rank": 5}),
    ]
    queue.resume()
    for ticket in tickets:
        ticket.result(timeout=5)

    assert order == ["high", "mid", "low"]


@pytest.mark.parametrize(
    ("store", "reason"),
    [
        (FailingStore(fail_put=True), "failed_to_put_task"),
        (FailingStore(fail_get=True), "failed_to_get"),
    ],
)
def test_store_failures_resolve_only_the_offending_ticket(make_queue, store, reason) -> None:
    queue = make_queue(lambda task, ctx: "ok", store=store)
    ticket = queue.submit({"id": "a"})

    assert ticket.wait(5)
    assert ticket.reason == reason


def test_missing_process_routine_fails_at_setup() -> None:
    with pytest.raises(QueueConfigError, match="no process function"):
        TaskQueue(None)


def test_invalid_settings_fail_at_setup() -> None:
    with pytest.raises(QueueConfigError, match="BATCH_SIZE"):
        TaskQueue(lambda task, ctx: None, batch_size=0)


def test_unknown_store_fails_synchronously(make_queue) -> None:
    with pytest.raises(UnknownStoreError):
        TaskQueue(lambda task, ctx: None, store="cassandra")

    queue = make_queue(lambda task, ctx: None)
    with pytest.raises(UnknownStoreError):
        queue.use({"type": "cassandra"})


def test_stack_order_requires_take_last_n() -> None:
    class FifoOnly:
        def connect(self) -> None: ...

        def put_task(self, task_id, task, priority=None) -> None: ...

        def get_task(self, task_id): ...

        def take_first_n(self, n): ...

    with pytest.raises(UnknownStoreError):
        TaskQueue(lambda task, ctx: None, store=FifoOnly(), filo=True)


def test_cancel_task_fails_pending_tickets_and_drops_entry(make_queue, wait_until) -> None:
    store = MemoryStore()
    queue = make_queue(lambda task, ctx: "never", store=store)
    queue.pause()
    ticket = queue.submit({"id": "a"})
    assert wait_until(lambda: ticket.is_queued)

    queue.cancel_task("a")

    assert ticket.wait(5)
    assert ticket.reason == "cancelled"
    assert len(store) == 0


def test_cancel_task_requires_deletable_store(make_queue) -> None:
    class NoDelete:
        def __init__(self) -> None:
            self._inner = MemoryStore()

        def connect(self) -> None: ...

        def put_task(self, task_id, task, priority=None) -> None:
            self._inner.put_task(task_id, task, priority)

        def get_task(self, task_id):
            return self._inner.get_task(task_id)

        def take_first_n(self, n):
            return self._inner.take_first_n(n)

    queue = make_queue(lambda task, ctx: None, store=NoDelete())

    with pytest.raises(StoreCapabilityError):
        queue.cancel_task("a")


def test_submit_after_close_is_refused(make_queue) -> None:
    queue = make_queue(lambda task, ctx: None)
    queue.close()

    with pytest.raises(RuntimeError, match="closed"):
        queue.submit({"id": "a"})


def test_wait_for_drain_returns_immediately_once_closed(make_queue) -> None:
    queue = make_queue(lambda task, ctx: None)
    queue.close()

    assert queue.wait_for_drain(None) is False


def test_failed_retry_store_write_is_reported_and_counted(make_queue, recorder) -> None:
    def process(task, ctx):
        raise RuntimeError("boom")

    queue = make_queue(process, store=RetryPutFailingStore(), max_retries=2)
    recorder.attach(queue, "task_retry", "task_failed")
    ticket = queue.submit({"id": "a"})

    with pytest.raises(TaskFailedError) as excinfo:
        ticket.result(timeout=5)

    assert excinfo.value.reason == "failed_to_put_task"
    assert recorder.wait_for("task_failed")
    assert recorder.args("task_retry") == [("a", 1)]
    assert recorder.args("task_failed") == [("a", "failed_to_put_task")]
    stats = queue.get_stats()
    assert stats.total == 1
    assert stats.failed == 1
