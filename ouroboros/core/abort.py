"""
Cancellation tokens shared by streams, tool batches and agent executions.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from ouroboros.errors import ExecutionAborted

logger = logging.getLogger(__name__)


class AbortSignal:
    """
    Thread-safe, one-shot cancellation flag with listeners.

    A child signal aborts when its parent does, but aborting a child leaves
    the parent untouched. Listeners fire exactly once, on the thread that
    calls abort(); a listener added after the abort fires immediately.
    """

    def __init__(self, parent: AbortSignal | None = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []
        self.reason: str | None = None
        self._detach_parent: Callable[[], None] = lambda: None
        if parent is not None:
            self._detach_parent = parent.add_listener(lambda: self.abort(parent.reason or "aborted"))

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            listeners, self._listeners = self._listeners, []

        for listener in listeners:
            self._notify(listener)

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._listeners.append(listener)

                def remove() -> None:
                    with self._lock:
                        if listener in self._listeners:
                            self._listeners.remove(listener)

                return remove

        self._notify(listener)
        return lambda: None

    def throw_if_aborted(self) -> None:
        if self.aborted:
            raise ExecutionAborted(self.reason or "aborted")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until aborted or timeout. Returns True if aborted."""
        return self._event.wait(timeout)

    def child(self) -> AbortSignal:
        return AbortSignal(parent=self)

    def detach(self) -> None:
        """Stop following the parent; drops the listener this signal left on it."""
        self._detach_parent()

    def _notify(self, listener: Callable[[], None]) -> None:
        try:
            listener()
        except Exception:
            logger.exception("Abort listener failed")

    def __repr__(self) -> str:
        state = f"aborted: {self.reason}" if self.aborted else "active"
        return f"<AbortSignal {state}>"
