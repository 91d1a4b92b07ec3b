"""
MQTT publisher for sweep results.

Accepted result sets go to ``<prefix>/results`` and correlation alerts to
``<prefix>/alerts``. Messages are queued and sent by a background thread so
publishing never blocks the pipeline; lost connections are retried with
exponential backoff.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

import paho.mqtt.client as mqtt

if TYPE_CHECKING:
    from utils.sweep.config import SweepConfig
    from utils.sweep.models import CorrelationAlert, ScanResult

logger = logging.getLogger('sweep.mqtt')

KEEPALIVE_SECONDS = 60
OUTBOX_SIZE = 10000

# Reconnect backoff, seconds
BACKOFF_INITIAL = 1
BACKOFF_CAP = 60
BACKOFF_FACTOR = 2

TOPIC_RESULTS = 'results'
TOPIC_ALERTS = 'alerts'


class ConnectionState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


@dataclass
class PublisherStats:
    messages_published: int = 0
    messages_failed: int = 0
    reconnect_attempts: int = 0
    last_publish_time: Optional[str] = None


@dataclass(frozen=True)
class OutboundMessage:
    topic: str
    payload: str
    qos: int


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class MQTTManager:
    """
    Publishes sweep output to the broker named in a SweepConfig.

    One instance per session. Nothing is sent while MQTT is disabled.
    Messages published while disconnected are dropped and start a
    connection attempt. Messages already in the outbox when the link
    drops wait there until it comes back.
    """

    def __init__(self, config: SweepConfig):
        self.config = config
        self._client: Optional[mqtt.Client] = None
        self._state = ConnectionState.DISCONNECTED
        self._outbox: queue.Queue[OutboundMessage] = queue.Queue(maxsize=OUTBOX_SIZE)
        self._sender: Optional[threading.Thread] = None
        self._retrier: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._backoff = BACKOFF_INITIAL
        self._last_error: Optional[str] = None
        self._stats = PublisherStats()

    @property
    def is_enabled(self) -> bool:
        return self.config.mqtt_enabled

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._client is not None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def stats(self) -> dict:
        return asdict(self._stats)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def _build_client(self) -> mqtt.Client:
        cfg = self.config
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f'{cfg.mqtt_client_id}_{int(time.time())}',
            protocol=mqtt.MQTTv311,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_publish = self._on_publish
        if cfg.mqtt_username:
            client.username_pw_set(cfg.mqtt_username, cfg.mqtt_password)
        if cfg.mqtt_use_tls:
            client.tls_set()
        return client

    def connect(self) -> bool:
        """
        Start connecting in the background.

        Returns:
            False if the client could not be set up; True otherwise,
            including when a connection already exists or is in progress.
        """
        if self._state != ConnectionState.DISCONNECTED:
            return True

        self._state = ConnectionState.CONNECTING
        self._stop_event.clear()
        host, port = self.config.mqtt_broker_host, self.config.mqtt_broker_port

        try:
            self._client = self._build_client()
            logger.info(f"Connecting to MQTT broker {host}:{port}")
            self._client.connect_async(host, port, keepalive=KEEPALIVE_SECONDS)
            self._client.loop_start()
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            self._last_error = str(e)
            logger.error(f"MQTT setup for {host}:{port} failed: {e}")
            return False

        self._ensure_thread('_sender', self._send_loop, 'mqtt-sender')
        return True

    def disconnect(self) -> None:
        self._stop_event.set()

        client, self._client = self._client, None
        if client is not None:
            try:
                client.loop_stop()
                client.disconnect()
            except Exception as e:
                logger.warning(f"MQTT disconnect raised: {e}")

        self._state = ConnectionState.DISCONNECTED
        if self._sender is not None and self._sender.is_alive():
            self._sender.join(timeout=2)
        logger.info("MQTT publisher disconnected")

    def shutdown(self) -> None:
        """Disconnect and discard anything still waiting in the outbox."""
        self.disconnect()
        dropped = 0
        while True:
            try:
                self._outbox.get_nowait()
            except queue.Empty:
                break
            dropped += 1
        logger.info(f"MQTT publisher shut down ({dropped} queued messages discarded)")

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, kind: str, data: dict) -> bool:
        """
        Queue ``data`` as JSON on ``<topic_prefix>/<kind>``.

        While disconnected this starts a connection attempt and drops the
        message.

        Returns:
            True if the message was queued.
        """
        if not self.is_enabled:
            return False
        if self._state != ConnectionState.CONNECTED:
            if self._state == ConnectionState.DISCONNECTED:
                self.connect()
            return False

        body = {'@timestamp': _utcnow(), **data, 'kind': kind}
        message = OutboundMessage(
            topic=f'{self.config.mqtt_topic_prefix}/{kind}',
            payload=json.dumps(body, default=str),
            qos=self.config.mqtt_qos,
        )
        try:
            self._outbox.put_nowait(message)
        except queue.Full:
            self._stats.messages_failed += 1
            logger.warning(f"MQTT outbox full, dropping {kind} message")
            return False
        return True

    def publish_results(self, results: list[ScanResult]) -> bool:
        return self.publish(TOPIC_RESULTS, {
            'count': len(results),
            'results': [r.to_dict() for r in results],
        })

    def publish_alert(self, alert: CorrelationAlert) -> bool:
        return self.publish(TOPIC_ALERTS, alert.to_dict())

    def _send_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                message = self._outbox.get(timeout=1)
            except queue.Empty:
                continue

            client = self._client
            if client is None or self._state != ConnectionState.CONNECTED:
                # Hold the message until the link is back
                try:
                    self._outbox.put_nowait(message)
                except queue.Full:
                    self._stats.messages_failed += 1
                self._stop_event.wait(0.1)
                continue

            try:
                info = client.publish(message.topic, message.payload, qos=message.qos)
            except Exception as e:
                self._stats.messages_failed += 1
                logger.error(f"MQTT publish to {message.topic} raised: {e}")
                continue
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._stats.messages_failed += 1
                logger.warning(f"MQTT publish to {message.topic} failed: rc={info.rc}")

    # -------------------------------------------------------------------------
    # paho callbacks
    # -------------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            self._state = ConnectionState.DISCONNECTED
            self._last_error = str(reason_code)
            logger.error(f"MQTT broker refused connection: {self._last_error}")
            return
        self._state = ConnectionState.CONNECTED
        self._backoff = BACKOFF_INITIAL
        self._last_error = None
        logger.info("MQTT publisher connected")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._state = ConnectionState.DISCONNECTED
        if not reason_code.is_failure:
            logger.info("MQTT connection closed")
            return
        self._last_error = f"Connection lost ({reason_code})"
        logger.warning(f"MQTT {self._last_error}")
        if self.is_enabled and not self._stop_event.is_set():
            self._ensure_thread('_retrier', self._retry_loop, 'mqtt-retry')

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        self._stats.messages_published += 1
        self._stats.last_publish_time = _utcnow()

    # -------------------------------------------------------------------------
    # Background threads
    # -------------------------------------------------------------------------

    def _ensure_thread(self, attr: str, target, name: str) -> None:
        thread: Optional[threading.Thread] = getattr(self, attr)
        if thread is not None and thread.is_alive():
            return
        thread = threading.Thread(target=target, name=name, daemon=True)
        setattr(self, attr, thread)
        thread.start()

    def _retry_loop(self) -> None:
        while self.is_enabled and self._state != ConnectionState.CONNECTED:
            self._stats.reconnect_attempts += 1
            logger.info(f"MQTT reconnect in {self._backoff}s")
            if self._stop_event.wait(self._backoff):
                return

            try:
                if self._client is None:
                    self.connect()
                else:
                    self._client.reconnect()
            except Exception as e:
                logger.warning(f"MQTT reconnect failed: {e}")
                self._backoff = min(self._backoff * BACKOFF_FACTOR, BACKOFF_CAP)
