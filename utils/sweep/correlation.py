"""
Cross-sensor correlation of anomaly events.

Keeps a short rolling window of (timestamp, source) events from every
detector and raises an alert whenever more than one distinct source fired
inside the window. Alerts are not debounced; every qualifying registration
re-alerts and consumers wanting at-most-once delivery must de-duplicate.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Optional

from .constants import CORRELATION_WINDOW_SECONDS, MAX_CORRELATION_EVENTS
from .events import EventChannel
from .models import AnomalyEvent, CorrelationAlert

logger = logging.getLogger('sweep.correlation')


class CorrelatedAnomalyEngine:
    """
    Time-windowed correlation engine.

    Append, prune and check happen under one lock so concurrent detectors
    always see a consistent window. Subscribers are called after the lock
    is released.
    """

    def __init__(
        self,
        window_seconds: float = CORRELATION_WINDOW_SECONDS,
        max_events: int = MAX_CORRELATION_EVENTS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._events: deque[AnomalyEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._alerts: EventChannel[CorrelationAlert] = EventChannel('correlation')
        self._last_alert: Optional[CorrelationAlert] = None
        self._alert_count = 0

    @property
    def window_seconds(self) -> float:
        return self.window.total_seconds()

    def register_event(self, source: str, timestamp: Optional[datetime] = None) -> Optional[CorrelationAlert]:
        """
        Register an anomaly from a named source.

        The registering event's timestamp is the reference "now": events
        older than ``timestamp - window`` are dropped before the check.

        Returns:
            The alert raised by this registration, or None.
        """
        ts = timestamp or self._clock()

        with self._lock:
            self._events.append(AnomalyEvent(timestamp=ts, source=source))
            self._prune(ts)
            alert = self._check_correlation(ts)
            if alert is not None:
                self._last_alert = alert
                self._alert_count += 1

        if alert is not None:
            logger.warning(f"Correlated anomaly detected from: {sorted(alert.sources)}")
            self._alerts.publish(alert)
        return alert

    def current_events(self) -> list[AnomalyEvent]:
        """Snapshot of the events currently in the window."""
        with self._lock:
            return list(self._events)

    def reset(self) -> None:
        """Clear all stored events and alert state."""
        with self._lock:
            self._events.clear()
            self._last_alert = None
            self._alert_count = 0

    def subscribe(self, callback: Callable[[CorrelationAlert], None]) -> Callable[[], None]:
        return self._alerts.subscribe(callback)

    def unsubscribe(self, callback: Callable[[CorrelationAlert], None]) -> None:
        self._alerts.unsubscribe(callback)

    @property
    def last_alert(self) -> Optional[CorrelationAlert]:
        with self._lock:
            return self._last_alert

    @property
    def alert_count(self) -> int:
        with self._lock:
            return self._alert_count

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.window
        kept = [e for e in self._events if e.timestamp >= cutoff]
        if len(kept) != len(self._events):
            self._events.clear()
            self._events.extend(kept)

    def _check_correlation(self, now: datetime) -> Optional[CorrelationAlert]:
        sources = frozenset(e.source for e in self._events)
        if len(sources) <= 1:
            return None
        return CorrelationAlert(
            sources=sources,
            events=tuple(self._events),
            timestamp=now,
        )
