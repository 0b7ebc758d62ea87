"""In-process task scheduler with de-duplication, batching, retries and tickets."""

from ticket_queue.config import QueueSettings
from ticket_queue.errors import (
    FailureReason,
    QueueConfigError,
    StoreCapabilityError,
    TaskFailedError,
    UnknownStoreError,
)
from ticket_queue.stores import MemoryStore, SqliteStore, TaskStore, register_store
from ticket_queue.task_queue import QueueStats, TaskQueue
from ticket_queue.ticket import ProgressSnapshot, Ticket, TicketStatus
from ticket_queue.tickets import TicketGroup
from ticket_queue.worker import Worker, WorkerContext

__version__ = "0.3.0"

__all__ = [
    "FailureReason",
    "MemoryStore",
    "ProgressSnapshot",
    "QueueConfigError",
    "QueueSettings",
    "QueueStats",
    "SqliteStore",
    "StoreCapabilityError",
    "TaskFailedError",
    "TaskQueue",
    "TaskStore",
    "Ticket",
    "TicketGroup",
    "TicketStatus",
    "UnknownStoreError",
    "Worker",
    "WorkerContext",
    "__version__",
    "register_store",
]
