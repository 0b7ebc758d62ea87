"""Pluggable pending-task stores and the named registry used by ``TaskQueue.use``."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from ticket_queue.errors import UnknownStoreError
from ticket_queue.stores.base import (
    DeletableTaskStore,
    StackTaskStore,
    TaskStore,
    supports,
)
from ticket_queue.stores.memory import MemoryStore
from ticket_queue.stores.sqlite import SqliteStore

StoreFactory = Callable[..., TaskStore]

_REGISTRY: dict[str, StoreFactory] = {
    "memory": MemoryStore,
    "sqlite": SqliteStore,
}


def register_store(name: str, factory: StoreFactory) -> None:
    """Make ``factory`` selectable by ``name`` in store specs."""

    if not name:
        raise ValueError("Store name must be non-empty.")
    _REGISTRY[name] = factory


def registered_stores() -> tuple[str, ...]:
    return tuple(sorted(_REGISTRY))


def resolve_store(spec: object, *, filo: bool = False, **options: Any) -> TaskStore:
    """Turn a store spec into a store instance, or raise ``UnknownStoreError``.

    Accepted specs: a registered name, a mapping with a registered ``type``
    (remaining keys become constructor options), or an object already
    offering the operations required for the ordering mode.
    """

    if isinstance(spec, str):
        factory = _REGISTRY.get(spec)
        if factory is None:
            raise UnknownStoreError(spec)
        return _checked(factory(**options), filo=filo, label=spec)
    if isinstance(spec, Mapping):
        store_type = spec.get("type")
        factory = _REGISTRY.get(store_type) if isinstance(store_type, str) else None
        if factory is None:
            raise UnknownStoreError(repr(store_type))
        store_options = {key: value for key, value in spec.items() if key != "type"}
        return _checked(factory(**store_options), filo=filo, label=store_type)
    if spec is not None and supports(spec, filo=filo):
        return spec  # type: ignore[return-value]
    raise UnknownStoreError(type(spec).__name__)


def _checked(store: TaskStore, *, filo: bool, label: str) -> TaskStore:
    if not supports(store, filo=filo):
        raise UnknownStoreError(f"{label} does not support the configured ordering")
    return store


__all__ = [
    "DeletableTaskStore",
    "MemoryStore",
    "SqliteStore",
    "StackTaskStore",
    "StoreFactory",
    "TaskStore",
    "register_store",
    "registered_stores",
    "resolve_store",
]
