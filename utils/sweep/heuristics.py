"""
Persistence heuristics for tracked entities.

Provides observable pattern checks, not proof of intent:
- tracker-following: the same identifier reappears over a 1-10 minute span
- spoofing: one network identity presents several hardware identities
- static: enough low-variance RSSI samples to call the emitter stationary
"""

from __future__ import annotations

import statistics
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .constants import (
    RAPID_SWITCH_DISTINCT,
    RAPID_SWITCH_RECENT,
    RAPID_SWITCH_WINDOW,
    SPOOF_MAX_DISTINCT,
    SPOOF_MAX_HISTORY,
    STATIC_MIN_SAMPLES,
    STATIC_VARIANCE_THRESHOLD,
    TRACKER_MAX_SPAN,
    TRACKER_MIN_SIGHTINGS,
    TRACKER_MIN_SPAN,
    TRACKER_SIGHTING_WINDOW,
)


class TrackerFollowingHeuristic:
    """
    Flags identifiers that keep reappearing over a bounded time span.

    A device seen at least three times within ten minutes, with the first
    and last sighting between one and ten minutes apart, matches
    opportunistic tracker advertising rather than a stationary beacon or a
    passer-by. Once flagged an identifier is never re-flagged.
    """

    def __init__(
        self,
        min_span: float = TRACKER_MIN_SPAN,
        max_span: float = TRACKER_MAX_SPAN,
        window_seconds: float = TRACKER_SIGHTING_WINDOW,
        min_sightings: int = TRACKER_MIN_SIGHTINGS,
    ):
        self.min_span = min_span
        self.max_span = max_span
        self.window_seconds = window_seconds
        self.min_sightings = min_sightings

        self._sightings: dict[str, list[datetime]] = {}
        self._flagged: set[str] = set()
        self._lock = threading.Lock()

    def record_sighting(self, identifier: str, timestamp: Optional[datetime] = None) -> bool:
        """
        Record a sighting and evaluate the identifier.

        Returns:
            True only on the call that first flags the identifier.
        """
        ts = timestamp or datetime.now()
        cutoff = ts - timedelta(seconds=self.window_seconds)

        with self._lock:
            history = [t for t in self._sightings.get(identifier, []) if t > cutoff]
            history.append(ts)
            self._sightings[identifier] = history

            if identifier in self._flagged:
                return False
            if len(history) < self.min_sightings:
                return False

            span = (history[-1] - history[0]).total_seconds()
            if self.min_span <= span <= self.max_span:
                self._flagged.add(identifier)
                return True
            return False

    def is_flagged(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self._flagged

    def sightings(self, identifier: str) -> list[datetime]:
        with self._lock:
            return list(self._sightings.get(identifier, []))

    @property
    def flagged(self) -> set[str]:
        with self._lock:
            return set(self._flagged)

    def reset(self) -> None:
        with self._lock:
            self._sightings.clear()
            self._flagged.clear()


class SpoofingHeuristic:
    """
    Tracks the secondary attribute (hardware address) seen for each primary
    attribute (broadcast name). More than two distinct secondaries for one
    primary is the spoofing signature.
    """

    def __init__(
        self,
        max_history: int = SPOOF_MAX_HISTORY,
        max_distinct: int = SPOOF_MAX_DISTINCT,
    ):
        self.max_history = max_history
        self.max_distinct = max_distinct

        # primary -> ordered distinct secondaries
        self._history: dict[str, deque[str]] = {}
        # primary -> deque[(timestamp, secondary)] of observed changes
        self._changes: dict[str, deque[tuple[datetime, str]]] = {}
        self._last_seen: dict[str, str] = {}
        self._lock = threading.Lock()

    def observe(self, primary: str, secondary: str, timestamp: Optional[datetime] = None) -> bool:
        """
        Record a (primary, secondary) pairing.

        Returns:
            True if the primary is now considered spoofed.
        """
        ts = timestamp or datetime.now()
        secondary = secondary.upper()

        with self._lock:
            history = self._history.setdefault(primary, deque(maxlen=self.max_history))
            if secondary not in history:
                history.append(secondary)

            if self._last_seen.get(primary) != secondary:
                changes = self._changes.setdefault(
                    primary, deque(maxlen=self.max_history)
                )
                changes.append((ts, secondary))
                self._last_seen[primary] = secondary

            return len(history) > self.max_distinct

    def is_suspicious(self, primary: str) -> bool:
        with self._lock:
            return len(self._history.get(primary, ())) > self.max_distinct

    def is_rapid_switching(self, primary: str, now: Optional[datetime] = None) -> bool:
        """
        Check for rapid secondary switching.

        True when more than three distinct secondaries appear among the last
        five changes and those changes happened within the last minute.
        """
        now = now or datetime.now()
        with self._lock:
            changes = list(self._changes.get(primary, ()))[-RAPID_SWITCH_RECENT:]
        if not changes:
            return False
        if (now - changes[0][0]).total_seconds() >= RAPID_SWITCH_WINDOW:
            return False
        return len({secondary for _, secondary in changes}) > RAPID_SWITCH_DISTINCT

    def secondaries(self, primary: str) -> list[str]:
        with self._lock:
            return list(self._history.get(primary, ()))

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._changes.clear()
            self._last_seen.clear()


def is_static(
    values: Iterable[float],
    min_samples: int = STATIC_MIN_SAMPLES,
    variance_threshold: float = STATIC_VARIANCE_THRESHOLD,
) -> bool:
    """
    Check whether an RSSI series indicates a stationary emitter.

    Requires at least ``min_samples`` values with population variance below
    ``variance_threshold``.
    """
    values = list(values)
    if len(values) < min_samples:
        return False
    return statistics.pvariance(values) < variance_threshold
