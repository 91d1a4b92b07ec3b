"""
Observer registration for typed sweep events.

Producers own an EventChannel and publish to it; consumers subscribe a
callback. There is no process-wide notification bus.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

logger = logging.getLogger('sweep.events')

T = TypeVar('T')


class EventChannel(Generic[T]):
    """
    Thread-safe list of subscriber callbacks for one event type.

    Callbacks run synchronously on the publishing thread. A failing
    callback is logged and does not prevent delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            A function that removes the subscription when called.
        """
        with self._lock:
            self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event: T) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber of {self.name} channel failed")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()
