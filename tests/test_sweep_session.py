"""Integration tests for the sweep session wiring."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from utils.sweep.config import ConfigError, SweepConfig
from utils.sweep.models import DeviceCategory
from utils.sweep.session import SweepSession


@pytest.fixture
def base_time():
    return datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def config(tmp_path):
    return SweepConfig(history_path=str(tmp_path / 'scan_history.json'))


@pytest.fixture
def session(config):
    session = SweepSession(config)
    session.start()
    yield session
    session.stop()


class TestWiring:

    def test_detector_feeds_results(self, session, base_time):
        session.bluetooth.process_advertisement('AA:BB', -40, name='Cam', timestamp=base_time)

        results = session.pipeline.results()
        assert [r.identifier for r in results] == ['AA:BB']
        assert results[0].type == DeviceCategory.BLUETOOTH

    def test_weak_signal_not_published(self, session, base_time):
        session.bluetooth.process_advertisement('AA:BB', -100, timestamp=base_time)
        assert session.pipeline.results() == []
        assert len(session.registry) == 1

    def test_results_persisted(self, session, base_time):
        session.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time)
        assert session.history.flush() is True
        history = session.history.load_history()
        assert [r.identifier for r in history] == ['AA:BB']

    def test_cross_sensor_correlation(self, session, base_time):
        session.network.process_access_point('Home', 'AA:BB:CC:DD:EE:FF', -50, timestamp=base_time)
        for s in (0, 70, 200):
            session.bluetooth.process_advertisement('tag', -90, timestamp=base_time + timedelta(seconds=s))

        # wifi change at t=0 is outside the window of the tracker flag at t=200
        assert session.engine.alert_count == 0

        session.network.process_access_point('Other', 'AA:BB:CC:DD:EE:00', -50,
                                             timestamp=base_time + timedelta(seconds=205))
        alert = session.engine.last_alert
        assert alert is not None
        assert alert.sources == frozenset({'airtag', 'wifi-Other'})

    def test_detector_lookup(self, session):
        assert session.detector(DeviceCategory.EMF) is session.magnetic
        assert session.detector(DeviceCategory.ACOUSTIC) is session.acoustic

    def test_no_mqtt_by_default(self, session):
        assert session.mqtt is None


class TestLifecycle:

    def test_start_stop(self, session, base_time):
        assert session.is_running
        assert session.history.is_running

        session.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time)
        session.stop()

        assert not session.is_running
        assert not session.bluetooth.is_active
        assert session.bluetooth.process_advertisement('CC', -40, timestamp=base_time) is None
        # entities remain visible after stop
        assert session.registry.get('AA:BB') is not None
        assert [r.identifier for r in session.history.load_history()] == ['AA:BB']

    def test_start_loads_oui_table(self, tmp_path):
        oui = tmp_path / 'oui.json'
        oui.write_text('{"AA:BB:CC": "Acme"}')
        config = SweepConfig(
            history_path=str(tmp_path / 'history.json'),
            oui_path=str(oui),
        )
        session = SweepSession(config)
        session.start()
        try:
            assert session.lookup.lookup('AA:BB:CC:00:00:01', timeout=2) == 'Acme'
        finally:
            session.stop()

    def test_reset(self, session, base_time):
        session.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time)
        session.reset()

        assert len(session.registry) == 0
        assert session.pipeline.results() == []
        assert session.engine.current_events() == []

    def test_reset_clears_detector_state(self, session, base_time):
        def sight_tag():
            for s in (0, 70, 200):
                session.bluetooth.process_advertisement('tag', -90, timestamp=base_time + timedelta(seconds=s))
            return session.registry.get('tag')

        assert sight_tag().is_tracker
        session.reset()

        entity = sight_tag()
        assert entity.is_tracker
        assert entity.severity_score >= 85

    def test_reset_publishes_empty_results(self, session, base_time):
        session.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time)
        callback = MagicMock()
        session.pipeline.subscribe(callback)

        session.reset()

        assert callback.call_args[0][0] == []

    def test_ingest_ignored_before_start(self, config, base_time):
        idle = SweepSession(config)

        assert idle.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time) is None
        assert len(idle.registry) == 0
        assert not idle.history.path.exists()

    def test_status(self, session):
        status = session.status()
        assert status['running'] is True
        assert status['detectors'] == {
            'bluetooth': True, 'wifi': True, 'emf': True, 'ir': True, 'acoustic': True,
        }
        assert status['mqtt_connected'] is False
        assert status['ble_scanning'] is False

    def test_status_before_start(self, config):
        status = SweepSession(config).status()
        assert status['running'] is False
        assert not any(status['detectors'].values())


class TestConfiguration:

    def test_min_severity_applied(self, session, base_time):
        session.bluetooth.process_advertisement('AA:BB', -60, timestamp=base_time)
        assert len(session.pipeline.results()) == 1

        changed = session.apply_config({'min_severity': 80})

        assert changed == ['min_severity']
        assert session.pipeline.min_severity == 80
        assert session.pipeline.results() == []

    def test_correlation_window_applied(self, session):
        session.apply_config({'correlation_window': 30})
        assert session.engine.window_seconds == 30

    def test_tracker_spans_applied(self, session):
        session.apply_config({'tracker_min_span': 10, 'tracker_max_span': 100})
        assert session.tracker_heuristic.min_span == 10
        assert session.tracker_heuristic.max_span == 100

    def test_invalid_config_rejected(self, session):
        with pytest.raises(ConfigError):
            session.apply_config({'min_severity': 150})
        assert session.config.min_severity == 50.0

    def test_startup_only_config_rejected(self, session, tmp_path):
        with pytest.raises(ConfigError):
            session.apply_config({'history_path': str(tmp_path / 'elsewhere.json')})
        assert session.config.history_path != str(tmp_path / 'elsewhere.json')


class TestMqttSink:

    def test_results_and_alerts_published(self, tmp_path, base_time):
        config = SweepConfig(history_path=str(tmp_path / 'history.json'), mqtt_enabled=True)
        with patch('utils.sweep.session.MQTTManager') as mock_cls:
            manager = MagicMock()
            mock_cls.return_value = manager
            session = SweepSession(config)
        session.start()
        manager.connect.assert_called_once()

        session.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time)
        manager.publish_results.assert_called()

        session.engine.register_event('emf', base_time)
        session.engine.register_event('ir', base_time)
        manager.publish_alert.assert_called_once()
        session.stop()
        manager.shutdown.assert_called_once()


class TestBleScanning:

    def test_disabled_by_default(self, session):
        assert session.ble_source is None

    def test_source_follows_session_lifecycle(self, tmp_path):
        config = SweepConfig(history_path=str(tmp_path / 'history.json'), ble_scan_enabled=True)
        with patch('utils.sweep.session.BLEAdvertisementSource') as mock_cls:
            source = MagicMock()
            mock_cls.return_value = source
            session = SweepSession(config)

        mock_cls.assert_called_once_with(session.bluetooth)
        source.start.assert_not_called()

        session.start()
        source.start.assert_called_once()

        session.stop()
        source.stop.assert_called_once()


class TestStream:

    def test_ping_then_results(self, session, base_time):
        events = session.stream_events(timeout=0.01)
        assert next(events) == {'type': 'ping'}

        session.bluetooth.process_advertisement('AA:BB', -40, timestamp=base_time)
        event = next(events)
        assert event['type'] == 'results'
        assert event['results'][0]['device']['identifier'] == 'AA:BB'

        events.close()
        assert session.pipeline._channel.subscriber_count == 0

    def test_alert_event(self, session, base_time):
        events = session.stream_events(timeout=0.01)
        next(events)

        session.engine.register_event('emf', base_time)
        session.engine.register_event('ir', base_time)

        event = next(events)
        assert event['type'] == 'alert'
        assert event['alert']['sources'] == ['emf', 'ir']
        events.close()
