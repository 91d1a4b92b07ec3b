"""
Sweep session.

Owns one instance of every sweep component and wires them together:
detectors feed the registry and the correlation engine, the pipeline
aggregates registry changes, and accepted results go to the history file
and, when enabled, to MQTT.
"""

from __future__ import annotations

import logging
import queue
import threading
from datetime import timedelta
from typing import Generator, Optional

from utils.mqtt import MQTTManager

from .baseline import AdaptiveBaselineDetector
from .ble_source import BLEAdvertisementSource
from .config import SweepConfig
from .correlation import CorrelatedAnomalyEngine
from .detectors import (
    AcousticDetector,
    BluetoothDetector,
    Detector,
    MagneticDetector,
    NetworkDetector,
    OpticalDetector,
)
from .heuristics import TrackerFollowingHeuristic
from .history import ScanHistoryManager
from .lookup import ManufacturerLookup
from .models import CorrelationAlert, DeviceCategory, ScanResult
from .pipeline import AggregationPipeline
from .registry import EntityRegistry

logger = logging.getLogger('sweep.session')

STREAM_QUEUE_SIZE = 100


class SweepSession:
    """A running sweep: all components plus their lifecycle."""

    def __init__(self, config: Optional[SweepConfig] = None):
        self.config = config or SweepConfig()
        config = self.config

        self.registry = EntityRegistry(max_signal_samples=config.max_signal_samples)
        self.engine = CorrelatedAnomalyEngine(window_seconds=config.correlation_window)
        self.lookup = ManufacturerLookup() if config.oui_path else ManufacturerLookup(entries={})
        self.history = ScanHistoryManager(config.history_path)
        self.mqtt: Optional[MQTTManager] = MQTTManager(config) if config.mqtt_enabled else None

        self.pipeline = AggregationPipeline(min_severity=config.min_severity, sink=self._save_results)
        self.pipeline.attach(self.registry)

        self.tracker_heuristic = TrackerFollowingHeuristic(
            min_span=config.tracker_min_span,
            max_span=config.tracker_max_span,
        )
        self.bluetooth = BluetoothDetector(
            self.registry, self.engine, self.lookup, tracker_heuristic=self.tracker_heuristic
        )
        self.network = NetworkDetector(self.registry, self.engine, self.lookup)
        self.magnetic = MagneticDetector(
            self.registry,
            self.engine,
            baseline=AdaptiveBaselineDetector(
                capacity=config.baseline_capacity,
                multiplier=config.baseline_multiplier,
            ),
        )
        self.optical = OpticalDetector(self.registry, self.engine, self.lookup)
        self.acoustic = AcousticDetector(self.registry, self.engine)
        self.ble_source: Optional[BLEAdvertisementSource] = (
            BLEAdvertisementSource(self.bluetooth) if config.ble_scan_enabled else None
        )

        self._detectors: dict[DeviceCategory, Detector] = {
            DeviceCategory.BLUETOOTH: self.bluetooth,
            DeviceCategory.WIFI: self.network,
            DeviceCategory.EMF: self.magnetic,
            DeviceCategory.IR: self.optical,
            DeviceCategory.ACOUSTIC: self.acoustic,
        }

        self.engine.subscribe(self._on_alert)
        self._running = False
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    def detector(self, category: DeviceCategory) -> Detector:
        return self._detectors[category]

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            if self.config.oui_path:
                self.lookup.load_async(self.config.oui_path)
            self.history.start()
            if self.mqtt is not None:
                self.mqtt.connect()
            for detector in self._detectors.values():
                detector.start()
            if self.ble_source is not None:
                self.ble_source.start()
            self._running = True
        logger.info("Sweep session started")

    def stop(self) -> None:
        """Stop every detector and collaborator. Entities stay visible."""
        with self._lock:
            if not self._running:
                return
            if self.ble_source is not None:
                self.ble_source.stop()
            for detector in self._detectors.values():
                detector.stop()
            self.history.stop()
            if self.mqtt is not None:
                self.mqtt.shutdown()
            self._running = False
        logger.info("Sweep session stopped")

    def reset(self) -> None:
        """Forget every entity, result, correlation event and detector state."""
        for detector in self._detectors.values():
            detector.reset()
        self.registry.clear()
        self.engine.reset()
        self.pipeline.clear()
        logger.info("Sweep session reset")

    def apply_config(self, values: dict) -> list[str]:
        """
        Update configuration and push live-tunable values to the components.

        Raises:
            ConfigError: if any value is invalid; nothing is applied then.
        """
        changed = self.config.update(values)
        if 'min_severity' in changed:
            self.pipeline.set_min_severity(self.config.min_severity)
        if 'correlation_window' in changed:
            self.engine.window = timedelta(seconds=self.config.correlation_window)
        if 'tracker_min_span' in changed or 'tracker_max_span' in changed:
            self.tracker_heuristic.min_span = self.config.tracker_min_span
            self.tracker_heuristic.max_span = self.config.tracker_max_span
        if 'baseline_multiplier' in changed:
            self.magnetic.baseline.multiplier = self.config.baseline_multiplier
        return changed

    def status(self) -> dict:
        return {
            'running': self._running,
            'entity_count': len(self.registry),
            'result_count': len(self.pipeline.results()),
            'detectors': {
                category.value: detector.is_active
                for category, detector in self._detectors.items()
            },
            'correlation': {
                'window_seconds': self.engine.window_seconds,
                'event_count': len(self.engine.current_events()),
                'alert_count': self.engine.alert_count,
            },
            'pipeline': self.pipeline.stats,
            'history': self.history.stats,
            'lookup_loaded': self.lookup.is_loaded,
            'mqtt_connected': self.mqtt.is_connected if self.mqtt else False,
            'ble_scanning': self.ble_source.is_scanning if self.ble_source else False,
        }

    def stream_events(self, timeout: float = 1.0) -> Generator[dict, None, None]:
        """
        Yield published result sets and correlation alerts as they happen.

        A ping event is yielded whenever nothing arrives within ``timeout``.
        """
        events: queue.Queue = queue.Queue(maxsize=STREAM_QUEUE_SIZE)

        def enqueue(event: dict) -> None:
            try:
                events.put_nowait(event)
            except queue.Full:
                logger.debug("Stream client too slow, dropping event")

        unsubscribe_results = self.pipeline.subscribe(
            lambda results: enqueue({
                'type': 'results',
                'results': [r.to_dict() for r in results],
            })
        )
        unsubscribe_alerts = self.engine.subscribe(
            lambda alert: enqueue({'type': 'alert', 'alert': alert.to_dict()})
        )
        try:
            while True:
                try:
                    yield events.get(timeout=timeout)
                except queue.Empty:
                    yield {'type': 'ping'}
        finally:
            unsubscribe_results()
            unsubscribe_alerts()

    def _save_results(self, results: list[ScanResult]) -> None:
        # Only the writer thread touches the history file
        if self.history.is_running:
            self.history.save_results(results)
        if self.mqtt is not None:
            self.mqtt.publish_results(results)

    def _on_alert(self, alert: CorrelationAlert) -> None:
        if self.mqtt is not None:
            self.mqtt.publish_alert(alert)
