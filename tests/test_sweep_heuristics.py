"""Unit tests for persistence heuristics."""

from datetime import datetime, timedelta

import pytest

from utils.sweep.heuristics import SpoofingHeuristic, TrackerFollowingHeuristic, is_static


@pytest.fixture
def base_time():
    return datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def tracker():
    return TrackerFollowingHeuristic()


@pytest.fixture
def spoofing():
    return SpoofingHeuristic()


def at(base, seconds):
    return base + timedelta(seconds=seconds)


class TestTrackerFollowing:

    def test_flags_spread_sightings(self, tracker, base_time):
        results = [
            tracker.record_sighting('tag', at(base_time, s)) for s in (0, 70, 200)
        ]
        assert results == [False, False, True]
        assert tracker.is_flagged('tag')

    def test_burst_not_flagged(self, tracker, base_time):
        results = [
            tracker.record_sighting('tag', at(base_time, s)) for s in (0, 10, 20)
        ]
        assert results == [False, False, False]
        assert not tracker.is_flagged('tag')

    def test_two_sightings_not_enough(self, tracker, base_time):
        tracker.record_sighting('tag', at(base_time, 0))
        assert tracker.record_sighting('tag', at(base_time, 120)) is False

    def test_flag_reported_once(self, tracker, base_time):
        for s in (0, 70, 200):
            tracker.record_sighting('tag', at(base_time, s))
        assert tracker.record_sighting('tag', at(base_time, 260)) is False
        assert tracker.flagged == {'tag'}

    def test_old_sightings_expire(self, tracker, base_time):
        tracker.record_sighting('tag', at(base_time, 0))
        tracker.record_sighting('tag', at(base_time, 300))
        # the first sighting is now older than the ten minute window
        assert tracker.record_sighting('tag', at(base_time, 700)) is False
        assert tracker.sightings('tag') == [at(base_time, 300), at(base_time, 700)]

    def test_identifiers_independent(self, tracker, base_time):
        tracker.record_sighting('a', at(base_time, 0))
        tracker.record_sighting('b', at(base_time, 70))
        assert tracker.record_sighting('a', at(base_time, 200)) is False

    def test_custom_spans(self, base_time):
        tracker = TrackerFollowingHeuristic(min_span=10, max_span=30)
        results = [tracker.record_sighting('tag', at(base_time, s)) for s in (0, 10, 20)]
        assert results[-1] is True

    def test_reset(self, tracker, base_time):
        for s in (0, 70, 200):
            tracker.record_sighting('tag', at(base_time, s))
        tracker.reset()
        assert not tracker.is_flagged('tag')
        assert tracker.sightings('tag') == []


class TestSpoofing:

    def test_three_addresses_suspicious(self, spoofing):
        assert spoofing.observe('Cafe', 'aa:aa:aa:aa:aa:01') is False
        assert spoofing.observe('Cafe', 'aa:aa:aa:aa:aa:02') is False
        assert spoofing.observe('Cafe', 'aa:aa:aa:aa:aa:03') is True
        assert spoofing.is_suspicious('Cafe')

    def test_repeats_not_counted(self, spoofing):
        for _ in range(5):
            spoofing.observe('Cafe', 'AA:AA:AA:AA:AA:01')
        spoofing.observe('Cafe', 'aa:aa:aa:aa:aa:01')
        spoofing.observe('Cafe', 'AA:AA:AA:AA:AA:02')
        assert spoofing.secondaries('Cafe') == ['AA:AA:AA:AA:AA:01', 'AA:AA:AA:AA:AA:02']
        assert not spoofing.is_suspicious('Cafe')

    def test_history_capped(self, spoofing):
        for i in range(15):
            spoofing.observe('Cafe', f'AA:AA:AA:AA:AA:{i:02X}')
        assert len(spoofing.secondaries('Cafe')) == 10

    def test_rapid_switching(self, spoofing, base_time):
        for i, mac in enumerate(['01', '02', '03', '04']):
            spoofing.observe('Cafe', f'AA:AA:AA:AA:AA:{mac}', at(base_time, i))
        assert spoofing.is_rapid_switching('Cafe', at(base_time, 5))

    def test_slow_switching_not_rapid(self, spoofing, base_time):
        for i, mac in enumerate(['01', '02', '03', '04']):
            spoofing.observe('Cafe', f'AA:AA:AA:AA:AA:{mac}', at(base_time, i))
        assert not spoofing.is_rapid_switching('Cafe', at(base_time, 120))

    def test_few_values_not_rapid(self, spoofing, base_time):
        for i, mac in enumerate(['01', '02', '01', '02', '03']):
            spoofing.observe('Cafe', f'AA:AA:AA:AA:AA:{mac}', at(base_time, i))
        assert not spoofing.is_rapid_switching('Cafe', at(base_time, 6))

    def test_unknown_primary(self, spoofing):
        assert not spoofing.is_suspicious('nothing')
        assert not spoofing.is_rapid_switching('nothing')


class TestIsStatic:

    def test_constant_signal(self):
        assert is_static([-50] * 10)

    def test_too_few_samples(self):
        assert not is_static([-50] * 9)

    def test_varying_signal(self):
        assert not is_static([-40, -60] * 5)

    def test_small_jitter(self):
        assert is_static([-50, -51, -49, -50, -52, -48, -50, -51, -49, -50])
