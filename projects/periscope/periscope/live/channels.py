"""Capacity-1, drop-oldest hand-off between threads."""

from __future__ import annotations

import threading
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class LatestSlot(Generic[T]):
    """
    Holds at most one pending item. ``put`` replaces whatever is waiting, so a
    slow consumer only ever sees the freshest item and never a backlog.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._item: Optional[T] = None
        self._pending = False
        self._closed = False
        self.dropped = 0

    def put(self, item: T) -> bool:
        """Store ``item``; returns True when an unconsumed item was discarded."""
        with self._cond:
            if self._closed:
                return False
            replaced = self._pending
            if replaced:
                self.dropped += 1
            self._item = item
            self._pending = True
            self._cond.notify()
            return replaced

    def take(self) -> Optional[T]:
        """Pop the pending item without waiting."""
        with self._cond:
            return self._pop()

    def wait(self, timeout: Optional[float] = None) -> Optional[T]:
        """Pop the pending item, waiting up to ``timeout`` seconds for one."""
        with self._cond:
            if not self._pending and not self._closed:
                self._cond.wait(timeout)
            return self._pop()

    def clear(self) -> None:
        with self._cond:
            self._pop()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._pop()
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _pop(self) -> Optional[T]:
        if not self._pending:
            return None
        item = self._item
        self._item = None
        self._pending = False
        return item
