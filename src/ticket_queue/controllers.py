"""Controllers for the ticket-queue CLI commands."""

from __future__ import annotations

import json
import threading
import time
from collections import Counter
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from ticket_queue.config import QueueSettings
from ticket_queue.stores import SqliteStore
from ticket_queue.task_queue import TaskQueue
from ticket_queue.worker import WorkerContext


@dataclass(slots=True)
class DemoCommand:
    """CLI input for a synthetic workload run."""

    tasks: int
    concurrent: int | None
    batch_size: int | None
    max_retries: int | None
    fail_every: int
    work_seconds: float
    filo: bool
    store: str | None
    db_path: Path | None
    drain_timeout_seconds: float = 60.0


@dataclass(slots=True)
class PendingCommand:
    """CLI input for listing pending entries of a SQLite store."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class DemoResult:
    """Demo report to render in CLI."""

    lines: list[str]
    success: bool


class _DemoRoutine:
    """Sleeps per task; the first attempt of every ``fail_every``-th task fails."""

    def __init__(self, *, fail_every: int, work_seconds: float) -> None:
        self.fail_every = fail_every
        self.work_seconds = work_seconds
        self._attempts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def __call__(self, payload: Any, ctx: WorkerContext) -> Any:
        tasks = {ctx.task_ids[0]: payload} if ctx.single else payload
        for position, (task_id, task) in enumerate(tasks.items(), start=1):
            with self._lock:
                self._attempts[task_id] += 1
                attempt = self._attempts[task_id]
            time.sleep(self.work_seconds)
            ctx.progress(position, len(tasks), task_id=task_id)
            index = int(task["index"])
            if self.fail_every and index % self.fail_every == 0 and attempt == 1:
                ctx.fail_task(task_id, f"synthetic failure of task {index}")
            else:
                ctx.finish_task(task_id, {"index": index, "attempt": attempt})
        ctx.defer()
        return None


class QueueCliController:
    """Runs CLI operations against queues and stores."""

    def run_demo(self, command: DemoCommand) -> DemoResult:
        settings = _demo_settings(command)
        settings.validate()
        counters: Counter[str] = Counter()
        order: list[str] = []
        routine = _DemoRoutine(fail_every=command.fail_every, work_seconds=command.work_seconds)

        started = time.monotonic()
        with TaskQueue.from_settings(routine, settings) as queue:
            queue.on(
                "task_finish",
                lambda task_id, _result: _count(counters, order, "finished", task_id),
            )
            queue.on(
                "task_failed",
                lambda task_id, _reason: _count(counters, order, "failed", task_id),
            )
            queue.on("task_retry", lambda _task_id, _attempt: counters.update(["retried"]))
            queue.on("empty", lambda: counters.update(["empty"]))
            queue.on("drain", lambda: counters.update(["drain"]))
            tickets = [
                queue.submit({"id": f"demo-{index}", "index": index})
                for index in range(1, command.tasks + 1)
            ]
            drained = queue.wait_for_drain(command.drain_timeout_seconds)
            stats = queue.get_stats()
        elapsed = time.monotonic() - started

        resolved = sum(1 for ticket in tickets if ticket.is_resolved)
        lines = [
            f"Demo run: tasks={command.tasks} concurrent={settings.concurrent} "
            f"batch_size={settings.batch_size} filo={settings.filo} store={settings.store}",
            f"Tickets resolved: {resolved}/{len(tickets)}",
            f"Finished: {counters['finished']} Failed: {counters['failed']} "
            f"Retried: {counters['retried']}",
            f"Events: empty={counters['empty']} drain={counters['drain']}",
            f"Stats: total={stats.total} success_rate={stats.success_rate:.2f} "
            f"avg={stats.average_seconds:.3f}s peak={stats.peak}",
            f"Completion order: {', '.join(order[:10])}{' ...' if len(order) > 10 else ''}",
            f"Elapsed: {elapsed:.2f}s",
        ]
        if not drained:
            lines.append(f"Queue did not drain within {command.drain_timeout_seconds:.0f}s")
        return DemoResult(lines=lines, success=drained and resolved == len(tickets))

    def list_pending(self, command: PendingCommand) -> list[str]:
        settings = QueueSettings.from_env()
        store = SqliteStore(command.db_path or settings.sqlite_path)
        store.connect()
        try:
            total = store.count()
            rows = store.list_pending(limit=command.limit)
        finally:
            store.close()
        if not rows:
            return [f"No pending tasks in {store.db_path}"]
        lines = [f"Pending tasks in {store.db_path}: {total}"]
        lines.extend(
            f"{row.seq:>6} {row.task_id} priority={row.priority:g} "
            f"payload={json.dumps(row.payload, ensure_ascii=False)[:80]}"
            for row in rows
        )
        return lines


def _demo_settings(command: DemoCommand) -> QueueSettings:
    base = QueueSettings.from_env()
    return replace(
        base,
        concurrent=command.concurrent if command.concurrent is not None else base.concurrent,
        batch_size=command.batch_size if command.batch_size is not None else base.batch_size,
        max_retries=command.max_retries if command.max_retries is not None else base.max_retries,
        filo=command.filo or base.filo,
        store=command.store or base.store,
        sqlite_path=command.db_path or base.sqlite_path,
    )


def _count(counters: Counter[str], order: list[str], key: str, task_id: str) -> None:
    counters[key] += 1
    order.append(task_id)
