"""Tests for the MQTT result publisher."""

import json
import queue
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from utils.mqtt import ConnectionState, MQTTManager
from utils.sweep.config import SweepConfig
from utils.sweep.models import (
    AnomalyEvent,
    CorrelationAlert,
    DeviceCategory,
    ScanResult,
    TrackedEntity,
)


@pytest.fixture
def config(tmp_path):
    return SweepConfig(
        history_path=str(tmp_path / 'history.json'),
        mqtt_enabled=True,
        mqtt_broker_host='broker.local',
        mqtt_username='user',
        mqtt_password='pass',
    )


@pytest.fixture
def manager(config):
    manager = MQTTManager(config)
    yield manager
    manager._stop_event.set()


@pytest.fixture
def connected(manager):
    manager._client = MagicMock()
    manager._state = ConnectionState.CONNECTED
    return manager


def make_result(identifier='AA:BB'):
    entity = TrackedEntity(
        name='Cam',
        type=DeviceCategory.BLUETOOTH,
        identifier=identifier,
        current_rssi=-40.0,
        timestamp=datetime(2024, 5, 1, 12, 0, 0),
        severity_score=90.0,
    )
    return ScanResult(device=entity, type=DeviceCategory.BLUETOOTH)


class TestConnect:

    @patch('utils.mqtt.mqtt.Client')
    def test_connect_configures_client(self, mock_client_cls, manager):
        client = MagicMock()
        mock_client_cls.return_value = client

        assert manager.connect() is True

        kwargs = mock_client_cls.call_args.kwargs
        assert kwargs['client_id'].startswith('signal-sweep_')
        client.username_pw_set.assert_called_once_with('user', 'pass')
        client.tls_set.assert_not_called()
        client.connect_async.assert_called_once_with('broker.local', 1883, keepalive=60)
        client.loop_start.assert_called_once()

    @patch('utils.mqtt.mqtt.Client')
    def test_connect_failure(self, mock_client_cls, manager):
        mock_client_cls.return_value.connect_async.side_effect = OSError('unreachable')

        assert manager.connect() is False
        assert manager.last_error == 'unreachable'
        assert not manager.is_connected

    def test_on_connect_success(self, manager):
        manager._client = MagicMock()
        manager._on_connect(None, None, None, MagicMock(is_failure=False), None)
        assert manager.is_connected
        assert manager.last_error is None

    def test_on_connect_refused(self, manager):
        manager._client = MagicMock()
        reason = MagicMock(is_failure=True)
        reason.__str__.return_value = 'Not authorized'

        manager._on_connect(None, None, None, reason, None)

        assert not manager.is_connected
        assert manager.last_error == 'Not authorized'

    def test_graceful_disconnect_does_not_reconnect(self, connected):
        with patch.object(connected, '_ensure_thread') as ensure_thread:
            connected._on_disconnect(None, None, None, MagicMock(is_failure=False), None)
        assert not connected.is_connected
        ensure_thread.assert_not_called()

    def test_unexpected_disconnect_reconnects(self, connected):
        with patch.object(connected, '_ensure_thread') as ensure_thread:
            connected._on_disconnect(None, None, None, MagicMock(is_failure=True), None)
        assert ensure_thread.call_args.args[0] == '_retrier'


class TestPublish:

    def test_disabled(self, tmp_path):
        manager = MQTTManager(SweepConfig(history_path=str(tmp_path / 'h.json')))
        assert manager.publish('results', {}) is False

    def test_not_connected_triggers_connect(self, manager):
        with patch.object(manager, 'connect') as connect:
            assert manager.publish('results', {}) is False
        connect.assert_called_once()

    def test_not_connected_drops_message(self, manager):
        with patch.object(manager, 'connect'):
            manager.publish('results', {'count': 1})
        assert manager._outbox.empty()

    def test_queued_message_waits_for_link(self, connected):
        connected.publish('results', {})
        connected._state = ConnectionState.DISCONNECTED
        assert connected._outbox.qsize() == 1

    def test_queued_message(self, connected):
        assert connected.publish('results', {'count': 0}) is True

        message = connected._outbox.get_nowait()
        assert message.topic == 'sweep/results'
        assert message.qos == 1
        payload = json.loads(message.payload)
        assert payload['kind'] == 'results'
        assert payload['count'] == 0
        assert '@timestamp' in payload

    def test_publish_results(self, connected):
        connected.publish_results([make_result('AA'), make_result('BB')])

        payload = json.loads(connected._outbox.get_nowait().payload)
        assert payload['count'] == 2
        assert [r['device']['identifier'] for r in payload['results']] == ['AA', 'BB']

    def test_publish_alert(self, connected):
        ts = datetime(2024, 5, 1, 12, 0, 0)
        alert = CorrelationAlert(
            sources=frozenset({'emf', 'ir'}),
            events=(AnomalyEvent(ts, 'emf'), AnomalyEvent(ts, 'ir')),
            timestamp=ts,
        )
        connected.publish_alert(alert)

        message = connected._outbox.get_nowait()
        assert message.topic == 'sweep/alerts'
        assert json.loads(message.payload)['sources'] == ['emf', 'ir']

    def test_queue_full(self, connected):
        connected._outbox = queue.Queue(maxsize=1)
        assert connected.publish('results', {}) is True
        assert connected.publish('results', {}) is False
        assert connected.stats['messages_failed'] == 1

    def test_on_publish_updates_stats(self, manager):
        manager._on_publish(None, None, 1, MagicMock(), None)
        assert manager.stats['messages_published'] == 1
        assert manager.stats['last_publish_time'] is not None


class TestShutdown:

    def test_shutdown_drains_queue(self, connected):
        client = connected._client
        connected.publish('results', {})
        connected.shutdown()

        client.loop_stop.assert_called_once()
        client.disconnect.assert_called_once()
        assert connected._outbox.empty()
        assert not connected.is_connected
