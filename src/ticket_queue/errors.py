"""Failure vocabulary and exceptions raised by the task queue."""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """Reasons a ticket can fail for, besides messages from the process routine."""

    INPUT_REJECTED = "input_rejected"
    FAILED_TO_PUT_TASK = "failed_to_put_task"
    FAILED_TO_PRIORITIZE = "failed_to_prioritize"
    FAILED_TO_GET = "failed_to_get"
    FAILED_TASK_MERGE = "failed_task_merge"
    TASK_TIMEOUT = "task_timeout"
    CANCELLED = "cancelled"


class QueueConfigError(ValueError):
    """Queue or settings misconfiguration detected at setup time."""


class UnknownStoreError(QueueConfigError):
    """Store selection does not resolve to a usable backend."""

    def __init__(self, detail: str | None = None) -> None:
        message = "unknown_store" if detail is None else f"unknown_store: {detail}"
        super().__init__(message)


class StoreCapabilityError(QueueConfigError):
    """Store lacks an optional operation that the caller asked for."""


class TaskFailedError(RuntimeError):
    """Raised by ``Ticket.result`` when the submission failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def reason_text(reason: object) -> str:
    """Normalize a failure reason (enum, exception or message) to plain text."""

    if isinstance(reason, FailureReason):
        return reason.value
    if isinstance(reason, BaseException):
        return str(reason) or type(reason).__name__
    return str(reason)
