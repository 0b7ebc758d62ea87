"""Batch executor: runs the process routine once for one dispatched batch."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from ticket_queue.errors import FailureReason, reason_text
from ticket_queue.events import EventSource

logger = logging.getLogger(__name__)

Dispatch = Callable[..., None]
ProcessRoutine = Callable[[Any, "WorkerContext"], Any]


class WorkerContext:
    """Handle given to the process routine alongside its task or batch.

    Every method is safe to call from any thread; reports are forwarded to the
    scheduling loop, which applies them in order and drops reports for tasks
    that already have a result.
    """

    def __init__(self, worker: Worker) -> None:
        self._worker = worker
        self._deferred = False

    @property
    def task_ids(self) -> list[str]:
        return list(self._worker.batch)

    @property
    def single(self) -> bool:
        """Whether the routine received a bare task instead of an id-to-task mapping."""

        return self._worker.single

    @property
    def cancelled(self) -> bool:
        """Set once cancellation was requested for this batch."""

        return self._worker.cancelled

    @property
    def paused(self) -> bool:
        return self._worker.paused

    @property
    def deferred(self) -> bool:
        return self._deferred

    def defer(self) -> None:
        """Report results later through this context instead of the return value."""

        self._deferred = True

    def attach(self, controller: object) -> None:
        """Expose ``cancel``/``pause``/``resume`` hooks of ``controller``.

        Any subset is fine; a nested ``TaskQueue`` provides ``pause`` and ``resume``.
        """

        self._worker.controller = controller

    def finish_task(self, task_id: str, result: Any = None) -> None:
        self._worker.dispatch(self._worker.finish_task, task_id, result)

    def fail_task(self, task_id: str, reason: object) -> None:
        self._worker.dispatch(self._worker.fail_task, task_id, reason_text(reason))

    def finish(self, result: Any = None) -> None:
        """Finish every task of the batch still waiting for a result."""

        self._worker.dispatch(self._worker.finish_batch, result)

    def fail(self, reason: object) -> None:
        """Fail every task of the batch still waiting for a result."""

        self._worker.dispatch(self._worker.fail_batch, reason_text(reason))

    def progress(
        self,
        current: int,
        total: int | None = None,
        task_id: str | None = None,
    ) -> None:
        """Report progress for one task, or for every unresolved task of the batch."""

        self._worker.dispatch(self._worker.progress, current, total, task_id)


class Worker(EventSource):
    """Executes one batch against the process routine on its own thread.

    Result bookkeeping (the ``task_*`` methods below) must only run on the
    scheduling loop thread; the routine reaches it through ``dispatch``.

    Events: ``task_finish`` (task_id, result), ``task_failed`` (task_id, reason),
    ``task_progress`` (task_id, current, total) and ``end`` once every task of
    the batch has exactly one result.
    """

    def __init__(
        self,
        *,
        process: ProcessRoutine,
        batch: dict[str, Any],
        single: bool,
        dispatch: Dispatch,
    ) -> None:
        super().__init__()
        self.process = process
        self.batch = dict(batch)
        self.single = single and len(self.batch) == 1
        self.dispatch = dispatch
        self.controller: object | None = process
        self.cancelled = False
        self.paused = False
        self.started_at: float | None = None
        self.context = WorkerContext(self)
        self._unresolved: set[str] = set(self.batch)
        self._ended = False
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return not self._ended

    @property
    def unresolved(self) -> frozenset[str]:
        return frozenset(self._unresolved)

    def start(self) -> None:
        self.started_at = time.monotonic()
        if not self.batch:
            self._end()
            return
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"ticket-queue-worker-{next(iter(self.batch))}",
        )
        self._thread.start()

    def _run(self) -> None:
        payload = next(iter(self.batch.values())) if self.single else dict(self.batch)
        try:
            result = self.process(payload, self.context)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Process routine raised for %s: %s", list(self.batch), exc)
            self.dispatch(self.fail_batch, reason_text(exc))
            return
        if not self.context.deferred:
            self.dispatch(self.finish_batch, result)

    def finish_task(self, task_id: str, result: Any = None) -> None:
        if self._claim(task_id):
            self.emit("task_finish", task_id, result)
            self._maybe_end()

    def fail_task(self, task_id: str, reason: object) -> None:
        if self._claim(task_id):
            self.emit("task_failed", task_id, reason_text(reason))
            self._maybe_end()

    def finish_batch(self, result: Any = None) -> None:
        for task_id in list(self.batch):
            if self._claim(task_id):
                self.emit("task_finish", task_id, result)
        self._maybe_end()

    def fail_batch(self, reason: object) -> None:
        message = reason_text(reason)
        for task_id in list(self.batch):
            if self._claim(task_id):
                self.emit("task_failed", task_id, message)
        self._maybe_end()

    def progress(self, current: int, total: int | None = None, task_id: str | None = None) -> None:
        targets = [task_id] if task_id is not None else list(self.batch)
        for target in targets:
            if target in self._unresolved:
                self.emit("task_progress", target, current, total)

    def cancel(self) -> bool:
        """Request cooperative cancellation; return whether a hook was invoked.

        Without a ``cancel`` hook the routine keeps running and its results
        are still delivered.
        """

        self.cancelled = True
        if not self._call_hook("cancel"):
            return False
        self.fail_batch(FailureReason.CANCELLED)
        return True

    def pause(self) -> bool:
        self.paused = True
        return self._call_hook("pause")

    def resume(self) -> bool:
        self.paused = False
        return self._call_hook("resume")

    def _call_hook(self, name: str) -> bool:
        hook = getattr(self.controller, name, None)
        if not callable(hook):
            return False
        try:
            hook()
        except Exception:
            logger.exception("Worker %s hook raised", name)
        return True

    def _claim(self, task_id: str) -> bool:
        if task_id not in self._unresolved:
            logger.debug("Discarding late or unknown result for task %s", task_id)
            return False
        self._unresolved.discard(task_id)
        return True

    def _maybe_end(self) -> None:
        if not self._unresolved:
            self._end()

    def _end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self.emit("end")
