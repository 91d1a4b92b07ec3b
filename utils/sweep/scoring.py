"""
Severity scoring for tracked entities.

Severity is the capped sum of a stability, a duration and a magnitude
component, clamped to [0, 100]. It is recomputed on every new sample; only
the current value is kept.
"""

from __future__ import annotations

from typing import Optional

from .constants import (
    DURATION_SCORE_MAX,
    DURATION_SCORE_PER_SECOND,
    RSSI_FLOOR,
    SEVERITY_MAX,
    SEVERITY_MIN,
    STABILITY_MIN_SAMPLES,
    STABILITY_SCORE_STABLE,
    STABILITY_SCORE_UNSTABLE,
    TIER_CRITICAL,
    TIER_HIGH,
    TIER_MODERATE,
    TRACKER_SEVERITY_FLOOR,
)
from .models import DeviceCategory, SignalHistory, ThreatLevel


def clamp(value: float, low: float = SEVERITY_MIN, high: float = SEVERITY_MAX) -> float:
    return max(low, min(high, value))


def tier_for_score(score: float) -> ThreatLevel:
    """Map a severity score to its tier: [0,30) low ... [85,100] critical."""
    if score < TIER_MODERATE:
        return ThreatLevel.LOW
    if score < TIER_HIGH:
        return ThreatLevel.MODERATE
    if score < TIER_CRITICAL:
        return ThreatLevel.HIGH
    return ThreatLevel.CRITICAL


def stability_component(history: SignalHistory) -> float:
    if len(history) > STABILITY_MIN_SAMPLES:
        return STABILITY_SCORE_STABLE
    return STABILITY_SCORE_UNSTABLE


def duration_component(history: SignalHistory) -> float:
    return max(0.0, min(DURATION_SCORE_MAX, history.duration_seconds() * DURATION_SCORE_PER_SECOND))


def normalize_magnitude(category: DeviceCategory, value: float) -> float:
    """
    Normalize a raw sample value into [0, 100] for its category.

    Radio and network samples are RSSI in dBm. Optical samples are already
    brightness percentages. Magnetic and acoustic samples carry no meaning
    on their own; their detectors supply a baseline-relative score instead,
    so the raw value is only clamped.
    """
    if category in (DeviceCategory.BLUETOOTH, DeviceCategory.WIFI):
        return clamp(value - RSSI_FLOOR)
    return clamp(value)


def score(
    history: SignalHistory,
    is_persistent_tracker: bool = False,
    category: DeviceCategory = DeviceCategory.BLUETOOTH,
    magnitude_score: Optional[float] = None,
) -> tuple[float, ThreatLevel]:
    """
    Score an entity from its signal history.

    Args:
        history: The entity's signal history.
        is_persistent_tracker: Whether the tracker-following heuristic
            has flagged the entity.
        category: Sensor category, selects the magnitude normalisation.
        magnitude_score: Detector-supplied magnitude score in [0, 100];
            overrides the category normalisation of the latest sample.

    Returns:
        (severity, tier) with severity in [0, 100].
    """
    current = history.current()
    if current is None:
        severity = 0.0
    else:
        if magnitude_score is not None:
            magnitude = clamp(magnitude_score)
        else:
            magnitude = normalize_magnitude(category, current.value)
        severity = clamp(
            stability_component(history) + duration_component(history) + magnitude
        )

    if is_persistent_tracker:
        severity = max(severity, TRACKER_SEVERITY_FLOOR)

    return severity, tier_for_score(severity)
