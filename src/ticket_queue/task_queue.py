"""Scheduling engine: submission, merge, batching, retries and drain tracking.

All scheduler state (pending ticket groups, retry counters, the active-worker
registry, timers and the store handle) belongs to one loop thread. Public
methods only post commands onto that thread, so the tables below are never
touched concurrently and need no locks.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from ticket_queue.config import QueueSettings
from ticket_queue.errors import (
    FailureReason,
    QueueConfigError,
    StoreCapabilityError,
    TaskFailedError,
)
from ticket_queue.events import EventSource
from ticket_queue.stores import TaskStore, resolve_store
from ticket_queue.ticket import Ticket, compute_progress
from ticket_queue.tickets import TicketGroup
from ticket_queue.worker import ProcessRoutine, Worker

logger = logging.getLogger(__name__)

FilterFn = Callable[[Any], Any]
MergeFn = Callable[[Any, Any], Any]
PriorityFn = Callable[[Any], float]
SubmitCallback = Callable[[TaskFailedError | None, Any], None]

_STOP = object()


@dataclass(slots=True)
class QueueStats:
    """Counters over concluded tasks since start or the last reset."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    average_seconds: float = 0.0
    success_rate: float = 1.0
    peak: int = 0


@dataclass(slots=True)
class _Timer:
    callback: Callable[..., None]
    args: tuple[Any, ...]
    cancelled: bool = False


class TaskQueue(EventSource):
    """In-process task scheduler with de-duplication, batching and retries.

    Events: ``task_accepted``, ``task_queued``, ``task_started`` (task_id, task),
    ``task_finish`` (task_id, result), ``task_failed`` (task_id, reason),
    ``task_progress`` (task_id, snapshot), ``task_retry`` (task_id, attempt),
    ``batch_finish`` (task_ids), ``empty`` and ``drain``. Listeners run on the
    scheduling loop thread.
    """

    def __init__(  # noqa: PLR0913
        self,
        process: ProcessRoutine | None = None,
        *,
        filter: FilterFn | None = None,  # noqa: A002
        priority: PriorityFn | None = None,
        merge: MergeFn | None = None,
        store: object = "memory",
        cancel_if_running: bool = True,
        auto_resume: bool = True,
        filo: bool = False,
        batch_size: int = 1,
        concurrent: int = 1,
        process_delay: float = 0.0,
        process_timeout: float | None = None,
        idle_timeout: float = 0.0,
        max_retries: int = 0,
    ) -> None:
        super().__init__()
        if process is None or not callable(process):
            raise QueueConfigError("Queue has no process function.")
        settings = QueueSettings(
            batch_size=batch_size,
            concurrent=concurrent,
            process_delay=process_delay,
            process_timeout=process_timeout,
            idle_timeout=idle_timeout,
            max_retries=max_retries,
            filo=filo,
            cancel_if_running=cancel_if_running,
            auto_resume=auto_resume,
        )
        settings.validate()
        self.settings = settings
        self.process = process
        self.filter = filter
        self.priority = priority
        self.merge: MergeFn = merge or _prefer_incoming

        self._stopped = False
        self._saturated = False
        self._closed = False
        self._debounce: _Timer | None = None
        self._called_drain = True
        self._called_empty = True
        self._running = 0
        self._retries: dict[str, int] = {}
        self._workers: dict[str, Worker] = {}
        self._tickets: dict[str, TicketGroup] = {}
        self._held: dict[str, tuple[Any, TicketGroup]] = {}
        self._cancelled_ids: set[str] = set()
        self._drain_waiters: list[threading.Event] = []
        self._stats = QueueStats()
        self._duration_total = 0.0

        self._commands: queue.Queue[Any] = queue.Queue()
        self._timers: list[tuple[float, int, _Timer]] = []
        self._timer_seq = itertools.count()

        self.store: TaskStore | None = None
        self._owns_store = False
        self._store: TaskStore | None = None
        self.use(store)

        self._loop_thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="ticket-queue-loop",
        )
        self._loop_thread.start()

    @classmethod
    def from_settings(
        cls,
        process: ProcessRoutine,
        settings: QueueSettings | None = None,
        *,
        filter: FilterFn | None = None,  # noqa: A002
        priority: PriorityFn | None = None,
        merge: MergeFn | None = None,
        store: object | None = None,
    ) -> TaskQueue:
        """Build a queue from ``QueueSettings`` (defaults to ``from_env``)."""

        settings = settings or QueueSettings.from_env()
        return cls(
            process,
            filter=filter,
            priority=priority,
            merge=merge,
            store=store if store is not None else settings.store_spec(),
            cancel_if_running=settings.cancel_if_running,
            auto_resume=settings.auto_resume,
            filo=settings.filo,
            batch_size=settings.batch_size,
            concurrent=settings.concurrent,
            process_delay=settings.process_delay,
            process_timeout=settings.process_timeout,
            idle_timeout=settings.idle_timeout,
            max_retries=settings.max_retries,
        )

    @property
    def batch_size(self) -> int:
        return self.settings.batch_size

    @property
    def concurrent(self) -> int:
        return self.settings.concurrent

    @property
    def filo(self) -> bool:
        return self.settings.filo

    @property
    def max_retries(self) -> int:
        return self.settings.max_retries

    @property
    def running(self) -> int:
        """Number of batches currently in flight."""

        return self._running

    @property
    def is_paused(self) -> bool:
        return self._stopped

    # -- public operations (any thread) ----------------------------------------

    def use(self, store: object, **options: Any) -> TaskStore:
        """Select the store backend; invalid selections raise ``UnknownStoreError``."""

        resolved = resolve_store(store, filo=self.filo, **options)
        self.store = resolved
        self._owns_store = resolved is not store
        self._post(self._connect_store, resolved)
        return resolved

    def submit(
        self,
        input: Any,  # noqa: A002
        callback: SubmitCallback | None = None,
        *,
        task_id: str | None = None,
    ) -> Ticket:
        """Submit ``input`` and return the ticket tracking its outcome."""

        if self._closed:
            raise RuntimeError("TaskQueue is closed")
        ticket = Ticket()
        if callback is not None:
            ticket.on("finish", lambda result: callback(None, result))
            ticket.on("failed", lambda reason: callback(TaskFailedError(reason), None))
        self._post(self._accept, input, ticket, task_id)
        return ticket

    def pause(self) -> None:
        self._post(self._pause)

    def resume(self) -> None:
        self._post(self._resume)

    def cancel_task(self, task_id: str) -> None:
        """Drop a pending id (failing its tickets) and cancel its in-flight dispatch."""

        if not callable(getattr(self.store, "delete_task", None)):
            raise StoreCapabilityError("Store does not support delete_task; cannot cancel.")
        self._post(self._cancel_task, str(task_id))

    def wait_for_drain(self, timeout: float | None = None) -> bool:
        """Block until the queue is drained; return ``False`` on timeout or once closed."""

        if self._closed:
            return False
        done = threading.Event()
        self._post(self._register_drain_waiter, done)
        return done.wait(timeout)

    def get_stats(self) -> QueueStats:
        stats = self._stats
        return QueueStats(
            total=stats.total,
            succeeded=stats.succeeded,
            failed=stats.failed,
            average_seconds=stats.average_seconds,
            success_rate=stats.success_rate,
            peak=stats.peak,
        )

    def reset_stats(self) -> None:
        self._post(self._reset_stats)

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop the scheduling loop; pending entries stay in the store."""

        if self._closed:
            return
        self._closed = True
        self._commands.put(_STOP)
        if threading.current_thread() is not self._loop_thread:
            self._loop_thread.join(timeout)
        close_store = getattr(self.store, "close", None)
        if self._owns_store and callable(close_store):
            close_store()

    def __enter__(self) -> TaskQueue:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    # -- loop machinery ---------------------------------------------------------

    def _post(self, callback: Callable[..., None], *args: Any) -> None:
        self._commands.put((callback, args))

    def _call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> _Timer:
        timer = _Timer(callback=callback, args=args)
        deadline = time.monotonic() + max(0.0, delay)
        heapq.heappush(self._timers, (deadline, next(self._timer_seq), timer))
        return timer

    def _run_loop(self) -> None:
        logger.info("Scheduling loop started")
        while True:
            try:
                command = self._commands.get(timeout=self._next_timer_delay())
            except queue.Empty:
                command = None
            if command is _STOP:
                break
            if command is not None:
                callback, args = command
                self._execute(callback, args)
            self._fire_due_timers()
        logger.info("Scheduling loop stopped")

    def _next_timer_delay(self) -> float | None:
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)
        if not self._timers:
            return None
        return max(0.0, self._timers[0][0] - time.monotonic())

    def _fire_due_timers(self) -> None:
        now = time.monotonic()
        while self._timers and self._timers[0][0] <= now:
            _, _, timer = heapq.heappop(self._timers)
            if not timer.cancelled:
                self._execute(timer.callback, timer.args)

    def _execute(self, callback: Callable[..., None], args: tuple[Any, ...]) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Scheduling step %s failed", getattr(callback, "__name__", callback))

    # -- store ------------------------------------------------------------------

    def _connect_store(self, store: TaskStore) -> None:
        try:
            store.connect()
        except Exception:
            logger.exception("Store %s failed to connect", type(store).__name__)
            return
        self._store = store
        logger.info("Store %s connected", type(store).__name__)
        if self.settings.auto_resume:
            self._resume()

    def _require_store(self) -> TaskStore:
        if self._store is None:
            raise RuntimeError("store is not connected")
        return self._store

    # -- submission path --------------------------------------------------------

    def _accept(self, input: Any, ticket: Ticket, task_id: str | None) -> None:  # noqa: A002
        try:
            task = self.filter(input) if self.filter is not None else input
        except Exception as exc:  # noqa: BLE001
            logger.warning("Input rejected by filter: %s", exc)
            task = None
        if task is None or task is False:
            ticket.failed(FailureReason.INPUT_REJECTED)
            return
        resolved_id = str(task_id) if task_id is not None else _task_id_of(task)
        ticket.accept()
        self.emit("task_accepted", resolved_id, task)
        self._queue_task(resolved_id, task, ticket)

    def _queue_task(
        self,
        task_id: str,
        task: Any,
        member: Ticket | TicketGroup | None,
        *,
        retry: bool = False,
    ) -> None:
        worker = self._workers.get(task_id)
        if worker is not None and worker.active and self.settings.cancel_if_running and not retry:
            logger.debug("Cancelling in-flight dispatch of %s for resubmission", task_id)
            worker.cancel()

        if task_id in self._held:
            self._merge_into_held(task_id, task, member, retry=retry)
            return

        try:
            existing = self._require_store().get_task(task_id)
        except Exception as exc:  # noqa: BLE001
            self._reject(task_id, member, FailureReason.FAILED_TO_GET, exc, retry=retry)
            return

        if existing is None and not retry:
            self._retries.pop(task_id, None)

        is_new = True
        if existing is not None:
            try:
                merged = self.merge(existing, task)
            except Exception as exc:  # noqa: BLE001
                self._reject(task_id, member, FailureReason.FAILED_TASK_MERGE, exc, retry=retry)
                return
            if merged is None:
                # Rides along with the pending entry; resolves with its outcome.
                self._attach(task_id, member)
                return
            task = merged
            is_new = False

        if not self._put(task_id, task, member, retry=retry):
            return
        self._attach(task_id, member)
        if is_new:
            self._new_work()
        self.emit("task_queued", task_id, task)
        self._schedule_debounced()

    def _put(
        self,
        task_id: str,
        task: Any,
        member: Ticket | TicketGroup | None,
        *,
        retry: bool,
    ) -> bool:
        priority: float | None = None
        if self.priority is not None:
            try:
                priority = self.priority(task)
            except Exception as exc:  # noqa: BLE001
                self._reject(task_id, member, FailureReason.FAILED_TO_PRIORITIZE, exc, retry=retry)
                return False
        try:
            self._require_store().put_task(task_id, task, priority)
        except Exception as exc:  # noqa: BLE001
            self._reject(task_id, member, FailureReason.FAILED_TO_PUT_TASK, exc, retry=retry)
            return False
        return True

    def _reject(
        self,
        task_id: str,
        member: Ticket | TicketGroup | None,
        reason: FailureReason,
        error: Exception,
        *,
        retry: bool,
    ) -> None:
        logger.warning("Submission of %s failed (%s): %s", task_id, reason.value, error)
        if retry:
            self._retries.pop(task_id, None)
            self._record(None, succeeded=False)
            self.emit("task_failed", task_id, reason.value)
        if member is not None:
            member.failed(reason)

    def _attach(self, task_id: str, member: Ticket | TicketGroup | None) -> None:
        if member is None:
            return
        group = self._tickets.get(task_id)
        if group is None:
            group = member if isinstance(member, TicketGroup) else TicketGroup()
            self._tickets[task_id] = group
        group.push(member)
        member.queued()

    def _merge_into_held(
        self,
        task_id: str,
        task: Any,
        member: Ticket | TicketGroup | None,
        *,
        retry: bool,
    ) -> None:
        held_task, group = self._held[task_id]
        if not retry:
            try:
                merged = self.merge(held_task, task)
            except Exception as exc:  # noqa: BLE001
                self._reject(task_id, member, FailureReason.FAILED_TASK_MERGE, exc, retry=retry)
                return
            if merged is not None:
                held_task = merged
        if member is not None:
            group.push(member)
            member.queued()
        self._held[task_id] = (held_task, group)

    def _new_work(self) -> None:
        self._called_drain = False
        self._called_empty = False

    def _schedule_debounced(self) -> None:
        if self._debounce is None:
            self._debounce = self._call_later(self.settings.process_delay, self._on_debounce)

    def _on_debounce(self) -> None:
        self._debounce = None
        self._process_next()

    # -- scheduling loop --------------------------------------------------------

    def _process_next(self) -> None:
        self._saturated = self._running >= self.concurrent
        if self._saturated or self._stopped or self._store is None or self._closed:
            return
        try:
            if self.filo:
                batch = self._store.take_last_n(self.batch_size)  # type: ignore[attr-defined]
            else:
                batch = self._store.take_first_n(self.batch_size)
        except Exception:
            logger.exception("Failed to take next batch from store")
            return

        if not batch:
            if not self._running:
                self._drained()
            else:
                self._emptied()
            return

        self._new_work()
        dispatchable: dict[str, Any] = {}
        for task_id, task in batch.items():
            owner = self._workers.get(task_id)
            if owner is not None and owner.active:
                logger.debug("Holding %s until its previous dispatch ends", task_id)
                self._held[task_id] = (task, self._tickets.pop(task_id, None) or TicketGroup())
                continue
            dispatchable[task_id] = task

        if dispatchable:
            groups: dict[str, TicketGroup] = {}
            for task_id, task in dispatchable.items():
                group = self._tickets.pop(task_id, None)
                if group is not None:
                    group.started(_expected_total(task, len(dispatchable)))
                    groups[task_id] = group
            self._start_batch(dispatchable, groups)

        self._post(self._process_next)

    def _start_batch(self, batch: dict[str, Any], groups: dict[str, TicketGroup]) -> None:
        worker = Worker(
            process=self.process,
            batch=batch,
            single=self.batch_size == 1,
            dispatch=self._post,
        )
        timeout: _Timer | None = None
        if self.settings.process_timeout is not None:
            timeout = self._call_later(
                self.settings.process_timeout,
                self._on_batch_timeout,
                worker,
            )

        worker.on(
            "task_finish",
            lambda task_id, result: self._on_task_finish(worker, groups, task_id, result),
        )
        worker.on(
            "task_failed",
            lambda task_id, reason: self._on_task_failed(worker, batch, groups, task_id, reason),
        )
        worker.on(
            "task_progress",
            lambda task_id, current, total: self._on_task_progress(
                worker,
                groups,
                task_id,
                current,
                total,
            ),
        )
        worker.on("end", lambda: self._on_batch_end(worker, timeout))

        self._running += 1
        self._stats.peak = max(self._stats.peak, self._running)
        for task_id in batch:
            self._workers[task_id] = worker
        logger.debug("Dispatching batch %s (%d in flight)", list(batch), self._running)
        worker.start()
        for task_id, task in batch.items():
            self.emit("task_started", task_id, task)

    def _on_task_finish(
        self,
        worker: Worker,
        groups: dict[str, TicketGroup],
        task_id: str,
        result: Any,
    ) -> None:
        self._retries.pop(task_id, None)
        self._cancelled_ids.discard(task_id)
        self._record(worker, succeeded=True)
        group = groups.pop(task_id, None)
        if group is not None:
            group.finish(result)
        self.emit("task_finish", task_id, result)

    def _on_task_failed(  # noqa: PLR0913
        self,
        worker: Worker,
        batch: dict[str, Any],
        groups: dict[str, TicketGroup],
        task_id: str,
        reason: str,
    ) -> None:
        attempts = self._retries.get(task_id, 0) + 1
        explicitly_cancelled = task_id in self._cancelled_ids
        if explicitly_cancelled or attempts >= self.max_retries:
            self._retries.pop(task_id, None)
            self._cancelled_ids.discard(task_id)
            self._record(worker, succeeded=False)
            group = groups.pop(task_id, None)
            if group is not None:
                group.failed(reason)
            logger.warning("Task %s failed after %d attempt(s): %s", task_id, attempts, reason)
            self.emit("task_failed", task_id, reason)
            return

        self._retries[task_id] = attempts
        logger.info("Retrying task %s (attempt %d failed: %s)", task_id, attempts, reason)
        self.emit("task_retry", task_id, attempts)
        self._queue_task(task_id, batch[task_id], groups.pop(task_id, None), retry=True)

    def _on_task_progress(  # noqa: PLR0913
        self,
        worker: Worker,
        groups: dict[str, TicketGroup],
        task_id: str,
        current: int,
        total: int | None,
    ) -> None:
        group = groups.get(task_id)
        snapshot = group.progress(current, total) if group is not None else None
        if snapshot is None:
            snapshot = compute_progress(
                current=current,
                total=total,
                elapsed_seconds=time.monotonic() - (worker.started_at or time.monotonic()),
            )
        self.emit("task_progress", task_id, snapshot)

    def _on_batch_timeout(self, worker: Worker) -> None:
        if not worker.active:
            return
        logger.warning("Batch %s timed out", sorted(worker.unresolved))
        worker.fail_batch(FailureReason.TASK_TIMEOUT)

    def _on_batch_end(self, worker: Worker, timeout: _Timer | None) -> None:
        self._running -= 1
        if timeout is not None:
            timeout.cancelled = True
        for task_id in worker.batch:
            if self._workers.get(task_id) is worker:
                del self._workers[task_id]
            self._release_held(task_id)
        self.emit("batch_finish", list(worker.batch))
        self._call_later(self.settings.idle_timeout, self._process_next)

    def _release_held(self, task_id: str) -> None:
        held = self._held.pop(task_id, None)
        if held is None:
            return
        task, group = held
        if not self._put(task_id, task, group, retry=False):
            return
        existing = self._tickets.get(task_id)
        if existing is not None:
            group.push(existing)
        self._tickets[task_id] = group
        self._new_work()

    def _emptied(self) -> None:
        if self._called_empty:
            return
        self._called_empty = True
        logger.debug("Store emptied with %d batch(es) in flight", self._running)
        self.emit("empty")

    def _drained(self) -> None:
        self._emptied()
        if self._called_drain:
            return
        self._called_drain = True
        logger.debug("Queue drained")
        self.emit("drain")
        waiters, self._drain_waiters = self._drain_waiters, []
        for waiter in waiters:
            waiter.set()

    # -- control commands -------------------------------------------------------

    def _pause(self) -> None:
        self._stopped = True
        for worker in self._active_workers():
            worker.pause()

    def _resume(self) -> None:
        self._stopped = False
        for worker in self._active_workers():
            worker.resume()
        self._process_next()

    def _active_workers(self) -> list[Worker]:
        workers: list[Worker] = []
        for worker in self._workers.values():
            if worker not in workers:
                workers.append(worker)
        return workers

    def _cancel_task(self, task_id: str) -> None:
        groups = [self._tickets.pop(task_id, None)]
        held = self._held.pop(task_id, None)
        if held is not None:
            groups.append(held[1])
        try:
            self._require_store().delete_task(task_id)  # type: ignore[attr-defined]
        except Exception:
            logger.exception("Failed to delete pending task %s", task_id)
        for group in groups:
            if group is not None:
                group.failed(FailureReason.CANCELLED)
        worker = self._workers.get(task_id)
        if worker is not None and worker.active:
            self._cancelled_ids.add(task_id)
            worker.cancel()
        else:
            self._retries.pop(task_id, None)

    def _register_drain_waiter(self, waiter: threading.Event) -> None:
        if self._called_drain and not self._running:
            waiter.set()
            return
        self._drain_waiters.append(waiter)

    def _record(self, worker: Worker | None, *, succeeded: bool) -> None:
        stats = self._stats
        stats.total += 1
        if succeeded:
            stats.succeeded += 1
        else:
            stats.failed += 1
        if worker is not None and worker.started_at is not None:
            self._duration_total += time.monotonic() - worker.started_at
        stats.average_seconds = self._duration_total / stats.total
        stats.success_rate = stats.succeeded / stats.total

    def _reset_stats(self) -> None:
        self._stats = QueueStats(peak=self._running)
        self._duration_total = 0.0


def _prefer_incoming(_existing: Any, incoming: Any) -> Any:
    return incoming


def _task_id_of(task: Any) -> str:
    if isinstance(task, Mapping):
        candidate = task.get("id")
    else:
        candidate = getattr(task, "id", None)
    return str(candidate) if candidate is not None else uuid4().hex


def _expected_total(task: Any, batch_len: int) -> int:
    if isinstance(task, Mapping):
        total = task.get("total")
    else:
        total = getattr(task, "total", None)
    if isinstance(total, int) and not isinstance(total, bool) and total > 0:
        return total
    return batch_len
