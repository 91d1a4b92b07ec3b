"""
Adaptive-baseline anomaly detection for continuous numeric streams.

The baseline is the median of a rolling buffer, so the detector adapts to
the ambient field strength of each location without calibration. On an
anomaly the buffer's mean-crossing rate separates oscillating electronic
sources from one-off disturbances such as nearby metal.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np

from .constants import (
    ANOMALY_CRITICAL_SCORE,
    ANOMALY_HIGH_SCORE,
    BASELINE_CAPACITY,
    BASELINE_INITIAL_MAGNITUDE,
    BASELINE_INITIAL_THRESHOLD,
    BASELINE_MIN_SAMPLES,
    BASELINE_MULTIPLIER,
    FEEDBACK_MIN_SCORE,
    FEEDBACK_RETRIGGER_SECONDS,
    FREQUENCY_MIN_SAMPLES,
    FREQUENCY_SCALE,
    MAGNITUDE_EXCESS_SCALE,
)
from .models import ThreatLevel, validate_value

logger = logging.getLogger('sweep.baseline')


def magnitude_from_vector(x: float, y: float, z: float) -> float:
    """Euclidean magnitude of a three-axis field sample."""
    return math.sqrt(x * x + y * y + z * z)


def anomaly_level(anomaly_score: float) -> ThreatLevel:
    """Tier reported with an anomaly: critical >90, high >75, else moderate."""
    if anomaly_score > ANOMALY_CRITICAL_SCORE:
        return ThreatLevel.CRITICAL
    if anomaly_score > ANOMALY_HIGH_SCORE:
        return ThreatLevel.HIGH
    return ThreatLevel.MODERATE


@dataclass(frozen=True)
class BaselineReading:
    """Outcome of feeding one sample to the detector."""
    magnitude: float
    timestamp: datetime
    baseline: float
    threshold: float
    is_anomaly: bool
    frequency_hz: float = 0.0
    anomaly_score: float = 0.0
    level: Optional[ThreatLevel] = None
    should_trigger: bool = False


class AdaptiveBaselineDetector:
    """
    Rolling median baseline with a proportional dynamic threshold.

    A sample is anomalous when it exceeds ``baseline + baseline * multiplier``.
    No anomaly is reported until the buffer holds more than
    ``BASELINE_MIN_SAMPLES`` samples.
    """

    def __init__(
        self,
        capacity: int = BASELINE_CAPACITY,
        multiplier: float = BASELINE_MULTIPLIER,
        retrigger_seconds: float = FEEDBACK_RETRIGGER_SECONDS,
    ):
        if capacity <= BASELINE_MIN_SAMPLES:
            raise ValueError(
                f'Baseline capacity must exceed {BASELINE_MIN_SAMPLES} samples'
            )
        self.capacity = capacity
        self.multiplier = multiplier
        self.retrigger_seconds = retrigger_seconds

        self._buffer: deque[tuple[float, datetime]] = deque(maxlen=capacity)
        self._baseline = BASELINE_INITIAL_MAGNITUDE
        self._threshold = BASELINE_INITIAL_THRESHOLD
        self._last_trigger: Optional[datetime] = None

    @property
    def baseline(self) -> float:
        return self._baseline

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def sample_count(self) -> int:
        return len(self._buffer)

    @property
    def has_baseline(self) -> bool:
        return len(self._buffer) > BASELINE_MIN_SAMPLES

    def add_sample(self, magnitude: float, timestamp: Optional[datetime] = None) -> BaselineReading:
        """
        Append a sample, refresh the baseline and evaluate it.

        Raises:
            InvalidSampleError: if the magnitude is NaN or infinite.
        """
        magnitude = validate_value(magnitude)
        if timestamp is None:
            timestamp = datetime.now()

        self._buffer.append((magnitude, timestamp))
        self._update_baseline()

        if not self.is_anomaly(magnitude):
            return BaselineReading(
                magnitude=magnitude,
                timestamp=timestamp,
                baseline=self._baseline,
                threshold=self._threshold,
                is_anomaly=False,
            )

        frequency = self.estimate_frequency()
        anomaly_score = self.compute_anomaly_score(magnitude, frequency)
        should_trigger = self._check_trigger(anomaly_score, timestamp)

        logger.debug(
            f"Anomaly: magnitude={magnitude:.1f} baseline={self._baseline:.1f} "
            f"freq={frequency:.2f}Hz score={anomaly_score:.1f}"
        )

        return BaselineReading(
            magnitude=magnitude,
            timestamp=timestamp,
            baseline=self._baseline,
            threshold=self._threshold,
            is_anomaly=True,
            frequency_hz=frequency,
            anomaly_score=anomaly_score,
            level=anomaly_level(anomaly_score),
            should_trigger=should_trigger,
        )

    def is_anomaly(self, magnitude: float) -> bool:
        if not self.has_baseline:
            return False
        return magnitude > self._baseline + self._threshold

    def estimate_frequency(self) -> float:
        """
        Estimate oscillation frequency from mean crossings across the buffer.

        Returns 0 Hz until at least ``FREQUENCY_MIN_SAMPLES`` are buffered.
        """
        if len(self._buffer) < FREQUENCY_MIN_SAMPLES:
            return 0.0

        magnitudes = np.fromiter((m for m, _ in self._buffer), dtype=float)
        mean = magnitudes.mean()
        prev, nxt = magnitudes[:-1], magnitudes[1:]
        crossings = int(np.count_nonzero(
            ((prev < mean) & (nxt >= mean)) | ((prev > mean) & (nxt <= mean))
        ))

        span = (self._buffer[-1][1] - self._buffer[0][1]).total_seconds()
        if span <= 0:
            return 0.0
        return crossings / (2.0 * span)

    def compute_anomaly_score(self, magnitude: float, frequency: float) -> float:
        """Average of normalized magnitude excess and frequency, scaled to [0, 100]."""
        mag_score = max(0.0, min(1.0, (magnitude - self._baseline) / MAGNITUDE_EXCESS_SCALE))
        freq_score = max(0.0, min(1.0, frequency / FREQUENCY_SCALE))
        return (mag_score + freq_score) / 2.0 * 100.0

    def reset(self) -> None:
        """Release buffered samples and return to the initial baseline."""
        self._buffer.clear()
        self._baseline = BASELINE_INITIAL_MAGNITUDE
        self._threshold = BASELINE_INITIAL_THRESHOLD
        self._last_trigger = None

    def _update_baseline(self) -> None:
        if not self.has_baseline:
            return
        self._baseline = float(np.median([m for m, _ in self._buffer]))
        self._threshold = self._baseline * self.multiplier

    def _check_trigger(self, anomaly_score: float, timestamp: datetime) -> bool:
        """Gate physical feedback to at most one trigger per re-trigger interval."""
        if anomaly_score <= FEEDBACK_MIN_SCORE:
            return False
        if self._last_trigger is not None:
            elapsed = (timestamp - self._last_trigger).total_seconds()
            if elapsed < self.retrigger_seconds:
                return False
        self._last_trigger = timestamp
        return True
