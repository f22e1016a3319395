"""Cancellation tokens shared between the executor and workers.

A token is cancelled explicitly or when any ancestor token is cancelled.
Parallel nodes hand each branch a child of their own token, so cancelling
the Parallel reaches every in-flight leaf beneath it.
"""

from __future__ import annotations

import threading
from typing import Optional


class CancellationToken:
    """Cooperative cancellation signal backed by a threading.Event."""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationToken] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._adopt(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this token and every descendant. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns ``cancelled``."""
        return self._event.wait(timeout)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            if self._event.is_set():
                inherited = self.reason
            else:
                self._children.append(child)
                return
        child.cancel(inherited or "cancelled")
