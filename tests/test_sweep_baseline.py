"""Unit tests for the adaptive baseline anomaly detector."""

import math
from datetime import datetime, timedelta

import pytest

from utils.sweep.baseline import (
    AdaptiveBaselineDetector,
    anomaly_level,
    magnitude_from_vector,
)
from utils.sweep.models import InvalidSampleError, ThreatLevel


@pytest.fixture
def base_time():
    return datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def detector():
    return AdaptiveBaselineDetector()


def feed(detector, values, start, step=0.1):
    """Feed values at a fixed sample interval, returning the last reading."""
    reading = None
    for i, value in enumerate(values):
        reading = detector.add_sample(value, start + timedelta(seconds=i * step))
    return reading


class TestBaseline:

    def test_initial_state(self, detector):
        assert detector.baseline == 50.0
        assert detector.threshold == 20.0
        assert detector.has_baseline is False

    def test_no_anomaly_before_enough_samples(self, detector, base_time):
        readings = [
            detector.add_sample(1000.0, base_time + timedelta(seconds=i))
            for i in range(10)
        ]
        assert not any(r.is_anomaly for r in readings)
        assert detector.has_baseline is False

    def test_median_baseline(self, detector, base_time):
        feed(detector, [40, 50, 60] * 4, base_time)
        assert detector.has_baseline
        assert detector.baseline == pytest.approx(50.0)
        assert detector.threshold == pytest.approx(20.0)

    def test_spike_is_anomaly(self, detector, base_time):
        feed(detector, [50.0] * 11, base_time)
        reading = detector.add_sample(100.0, base_time + timedelta(seconds=2))

        assert reading.is_anomaly
        assert reading.baseline == pytest.approx(50.0)
        # (100 - 50) / 200 = 0.25, no frequency with < 100 samples
        assert reading.frequency_hz == 0.0
        assert reading.anomaly_score == pytest.approx(12.5)
        assert reading.level == ThreatLevel.MODERATE
        assert reading.should_trigger is False

    def test_anomaly_iff_above_baseline_plus_threshold(self, detector, base_time):
        feed(detector, [50.0] * 20, base_time)
        at_limit = detector.add_sample(70.0, base_time + timedelta(seconds=3))
        above = detector.add_sample(70.1, base_time + timedelta(seconds=3.1))

        assert at_limit.is_anomaly is False
        assert above.is_anomaly is True

    def test_multiplier(self, base_time):
        detector = AdaptiveBaselineDetector(multiplier=1.0)
        feed(detector, [50.0] * 20, base_time)
        assert detector.threshold == pytest.approx(50.0)
        assert detector.add_sample(90.0, base_time + timedelta(seconds=5)).is_anomaly is False

    def test_invalid_magnitude(self, detector, base_time):
        with pytest.raises(InvalidSampleError):
            detector.add_sample(math.nan, base_time)
        assert detector.sample_count == 0

    def test_capacity_must_exceed_min_samples(self):
        with pytest.raises(ValueError):
            AdaptiveBaselineDetector(capacity=10)

    def test_buffer_bounded(self, base_time):
        detector = AdaptiveBaselineDetector(capacity=50)
        feed(detector, [50.0] * 120, base_time)
        assert detector.sample_count == 50

    def test_reset(self, detector, base_time):
        feed(detector, [80.0] * 20, base_time)
        detector.reset()
        assert detector.sample_count == 0
        assert detector.baseline == 50.0
        assert detector.threshold == 20.0


class TestFrequency:

    def test_needs_hundred_samples(self, detector, base_time):
        feed(detector, [40, 60] * 49, base_time)
        assert detector.estimate_frequency() == 0.0

    def test_alternating_signal(self, detector, base_time):
        # 10 samples/s alternating: 199 crossings over 19.9 s -> 5 Hz
        feed(detector, [40, 60] * 100, base_time, step=0.1)
        assert detector.estimate_frequency() == pytest.approx(5.0)

    def test_zero_span(self, detector, base_time):
        for i in range(120):
            detector.add_sample(40 if i % 2 else 60, base_time)
        assert detector.estimate_frequency() == 0.0


class TestAnomalyScore:

    def test_saturates(self, detector, base_time):
        feed(detector, [50.0] * 20, base_time)
        assert detector.compute_anomaly_score(250.0, 10.0) == pytest.approx(100.0)
        assert detector.compute_anomaly_score(1000.0, 50.0) == pytest.approx(100.0)

    def test_half_from_frequency(self, detector, base_time):
        feed(detector, [50.0] * 20, base_time)
        assert detector.compute_anomaly_score(50.0, 10.0) == pytest.approx(50.0)

    @pytest.mark.parametrize('value,level', [
        (95, ThreatLevel.CRITICAL),
        (90, ThreatLevel.HIGH),
        (80, ThreatLevel.HIGH),
        (75, ThreatLevel.MODERATE),
        (10, ThreatLevel.MODERATE),
    ])
    def test_levels(self, value, level):
        assert anomaly_level(value) == level


class TestFeedbackTrigger:

    @pytest.fixture
    def oscillating(self, detector, base_time):
        # 100 samples/s alternating around 50 µT saturates the frequency score
        feed(detector, [45, 55] * 60, base_time, step=0.01)
        return detector

    def test_strong_anomaly_triggers(self, oscillating, base_time):
        reading = oscillating.add_sample(250.0, base_time + timedelta(seconds=1.2))
        assert reading.is_anomaly
        assert reading.anomaly_score > 80
        assert reading.should_trigger is True

    def test_retrigger_interval(self, oscillating, base_time):
        first = oscillating.add_sample(250.0, base_time + timedelta(seconds=1.2))
        too_soon = oscillating.add_sample(250.0, base_time + timedelta(seconds=1.7))
        later = oscillating.add_sample(250.0, base_time + timedelta(seconds=2.3))

        assert first.should_trigger is True
        assert too_soon.is_anomaly is True
        assert too_soon.should_trigger is False
        assert later.should_trigger is True


def test_magnitude_from_vector():
    assert magnitude_from_vector(3.0, 4.0, 0.0) == pytest.approx(5.0)
    assert magnitude_from_vector(0.0, 0.0, 0.0) == 0.0
