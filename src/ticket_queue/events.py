"""Minimal listener registry shared by tickets, workers and the queue."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventSource:
    """Named-event observer list.

    Listeners run synchronously on the emitting thread, in registration order.
    A listener that raises is logged and does not stop the others.
    Registration is safe from any thread.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[str, list[tuple[Listener, bool]]] = defaultdict(list)
        self._listeners_lock = threading.Lock()

    def on(self, event: str, listener: Listener) -> EventSource:
        """Register ``listener`` for every ``event`` emission."""

        with self._listeners_lock:
            self._listeners[event].append((listener, False))
        return self

    def once(self, event: str, listener: Listener) -> EventSource:
        """Register ``listener`` for the next ``event`` emission only."""

        with self._listeners_lock:
            self._listeners[event].append((listener, True))
        return self

    def off(self, event: str, listener: Listener) -> EventSource:
        """Remove every registration of ``listener`` for ``event``."""

        with self._listeners_lock:
            self._listeners[event] = [
                entry for entry in self._listeners[event] if entry[0] is not listener
            ]
        return self

    def listener_count(self, event: str) -> int:
        with self._listeners_lock:
            return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """Invoke listeners of ``event``; return whether any were registered."""

        with self._listeners_lock:
            entries = list(self._listeners.get(event, ()))
            if not entries:
                return False
            if any(once for _, once in entries):
                self._listeners[event] = [
                    entry for entry in self._listeners[event] if not entry[1]
                ]
        for listener, _ in entries:
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %r raised", event)
        return True
