"""Store contract for pending tasks."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class TaskStore(Protocol):
    """Ordered persistence of pending tasks keyed by id.

    Every method is called from the scheduling loop thread only, one call at a
    time. Each call must be atomic on its own; the queue never spans a
    transaction across calls. Failures are signalled by raising.
    """

    def connect(self) -> None:
        """Prepare the backend; called once before any other operation."""

    def put_task(self, task_id: str, task: Any, priority: float | None = None) -> None:
        """Insert or replace the pending task stored under ``task_id``."""

    def get_task(self, task_id: str) -> Any | None:
        """Return the pending task for ``task_id`` or ``None`` when absent."""

    def take_first_n(self, n: int) -> dict[str, Any]:
        """Remove and return up to ``n`` entries, oldest first within a priority."""


@runtime_checkable
class StackTaskStore(TaskStore, Protocol):
    """Store that can also serve newest-first (stack) ordering."""

    def take_last_n(self, n: int) -> dict[str, Any]:
        """Remove and return up to ``n`` entries, newest first within a priority."""


@runtime_checkable
class DeletableTaskStore(Protocol):
    """Optional capability used by ``TaskQueue.cancel`` for pending ids."""

    def delete_task(self, task_id: str) -> None:
        """Drop ``task_id`` if pending; no error when absent."""


REQUIRED_METHODS = ("put_task", "get_task")


def supports(store: object, *, filo: bool) -> bool:
    """Whether ``store`` offers the operations needed for the given ordering."""

    names = (*REQUIRED_METHODS, "take_last_n" if filo else "take_first_n")
    return all(callable(getattr(store, name, None)) for name in names)
