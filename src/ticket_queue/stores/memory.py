"""In-process store; pending tasks are lost with the process."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class _Entry:
    task: Any
    priority: float
    seq: int


class MemoryStore:
    """Dictionary-backed store honouring priority, then insertion order."""

    def __init__(self, **_options: Any) -> None:
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def connect(self) -> None:
        return None

    def put_task(self, task_id: str, task: Any, priority: float | None = None) -> None:
        existing = self._entries.get(task_id)
        seq = existing.seq if existing is not None else next(self._seq)
        self._entries[task_id] = _Entry(task=task, priority=float(priority or 0), seq=seq)

    def get_task(self, task_id: str) -> Any | None:
        entry = self._entries.get(task_id)
        return None if entry is None else entry.task

    def delete_task(self, task_id: str) -> None:
        self._entries.pop(task_id, None)

    def take_first_n(self, n: int) -> dict[str, Any]:
        return self._take(n, newest_first=False)

    def take_last_n(self, n: int) -> dict[str, Any]:
        return self._take(n, newest_first=True)

    def _take(self, n: int, *, newest_first: bool) -> dict[str, Any]:
        direction = -1 if newest_first else 1
        ordered = sorted(
            self._entries.items(),
            key=lambda item: (-item[1].priority, direction * item[1].seq),
        )
        taken: dict[str, Any] = {}
        for task_id, entry in ordered[: max(0, n)]:
            del self._entries[task_id]
            taken[task_id] = entry.task
        return taken
