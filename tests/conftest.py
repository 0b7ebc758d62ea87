"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from functools import partial
from typing import Any

import pytest

from ticket_queue import TaskQueue


class EventRecorder:
    """Thread-safe log of events emitted by queues, tickets or workers."""

    def __init__(self) -> None:
        self.events: list[tuple[str, tuple[Any, ...]]] = []
        self._condition = threading.Condition()

    def attach(self, source: Any, *names: str) -> EventRecorder:
        for name in names:
            source.on(name, partial(self.record, name))
        return self

    def record(self, name: str, *args: Any) -> None:
        with self._condition:
            self.events.append((name, args))
            self._condition.notify_all()

    def names(self) -> list[str]:
        with self._condition:
            return [name for name, _ in self.events]

    def args(self, name: str) -> list[tuple[Any, ...]]:
        with self._condition:
            return [args for event, args in self.events if event == name]

    def count(self, name: str) -> int:
        return len(self.args(name))

    def index(self, name: str, *args: Any) -> int:
        with self._condition:
            return self.events.index((name, args))

    def wait_for(self, name: str, count: int = 1, timeout: float = 5.0) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: sum(1 for event, _ in self.events if event == name) >= count,
                timeout,
            )


@pytest.fixture()
def make_queue() -> Iterator[Callable[..., TaskQueue]]:
    """Build queues that are closed when the test ends."""

    queues: list[TaskQueue] = []

    def _make(process: Callable[..., Any], **options: Any) -> TaskQueue:
        queue = TaskQueue(process, **options)
        queues.append(queue)
        return queue

    yield _make
    for queue in queues:
        queue.close()


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def wait_until() -> Callable[..., bool]:
    def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.005) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
