"""Runtime configuration for task queues."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from ticket_queue.errors import QueueConfigError
from ticket_queue.stores.sqlite import DEFAULT_SQLITE_PATH

ENV_PREFIX = "TICKET_QUEUE_"


@dataclass(slots=True)
class QueueSettings:
    """Scalar queue options; callables (process, filter, merge, priority) are passed separately."""

    batch_size: int = 1
    concurrent: int = 1
    process_delay: float = 0.0
    process_timeout: float | None = None
    idle_timeout: float = 0.0
    max_retries: int = 0
    filo: bool = False
    cancel_if_running: bool = True
    auto_resume: bool = True
    store: str = "memory"
    sqlite_path: Path = DEFAULT_SQLITE_PATH

    @classmethod
    def from_env(cls) -> QueueSettings:
        """Load settings from ``TICKET_QUEUE_*`` environment variables."""

        timeout_raw = os.getenv(f"{ENV_PREFIX}PROCESS_TIMEOUT", "").strip()
        return cls(
            batch_size=_env_int("BATCH_SIZE", 1),
            concurrent=_env_int("CONCURRENT", 1),
            process_delay=_env_float("PROCESS_DELAY", 0.0),
            process_timeout=_parse_float("PROCESS_TIMEOUT", timeout_raw) if timeout_raw else None,
            idle_timeout=_env_float("IDLE_TIMEOUT", 0.0),
            max_retries=_env_int("MAX_RETRIES", 0),
            filo=_env_bool("FILO", default=False),
            cancel_if_running=_env_bool("CANCEL_IF_RUNNING", default=True),
            auto_resume=_env_bool("AUTO_RESUME", default=True),
            store=os.getenv(f"{ENV_PREFIX}STORE", "memory").strip() or "memory",
            sqlite_path=Path(os.getenv(f"{ENV_PREFIX}SQLITE_PATH", str(DEFAULT_SQLITE_PATH))),
        )

    def validate(self) -> None:
        """Raise ``QueueConfigError`` for values the scheduler cannot honour."""

        if self.batch_size < 1:
            raise QueueConfigError("TICKET_QUEUE_BATCH_SIZE must be >= 1.")
        if self.concurrent < 1:
            raise QueueConfigError("TICKET_QUEUE_CONCURRENT must be >= 1.")
        if self.process_delay < 0:
            raise QueueConfigError("TICKET_QUEUE_PROCESS_DELAY must be >= 0.")
        if self.process_timeout is not None and self.process_timeout <= 0:
            raise QueueConfigError("TICKET_QUEUE_PROCESS_TIMEOUT must be > 0 when set.")
        if self.idle_timeout < 0:
            raise QueueConfigError("TICKET_QUEUE_IDLE_TIMEOUT must be >= 0.")
        if self.max_retries < 0:
            raise QueueConfigError("TICKET_QUEUE_MAX_RETRIES must be >= 0.")

    def store_spec(self) -> str | dict[str, object]:
        """Store selection suitable for ``TaskQueue.use``."""

        if self.store == "sqlite":
            return {"type": "sqlite", "path": self.sqlite_path}
        return self.store


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise QueueConfigError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    return _parse_float(name, raw)


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as error:
        raise QueueConfigError(f"Invalid number for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise QueueConfigError(f"Invalid boolean value for {ENV_PREFIX}{name}: {value!r}")
