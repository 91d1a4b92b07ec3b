"""
Sweep configuration.

Defaults come from constants and can be overridden with SWEEP_* environment
variables. Runtime changes (HTTP settings endpoint) go through update().
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional

from .constants import (
    BASELINE_CAPACITY,
    BASELINE_MIN_SAMPLES,
    BASELINE_MULTIPLIER,
    CORRELATION_WINDOW_SECONDS,
    DEFAULT_HISTORY_FILE,
    MAX_SIGNAL_SAMPLES,
    MIN_SEVERITY_SCORE,
    TRACKER_MAX_SPAN,
    TRACKER_MIN_SPAN,
)

logger = logging.getLogger('sweep.config')

ENV_PREFIX = 'SWEEP_'

DEFAULT_MQTT_HOST = 'localhost'
DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTT_CLIENT_ID = 'signal-sweep'
DEFAULT_MQTT_TOPIC_PREFIX = 'sweep'
DEFAULT_MQTT_QOS = 1

_TRUE_VALUES = ('1', 'true', 'yes', 'on')

# Read once when the session is built
STARTUP_ONLY_FIELDS = (
    'max_signal_samples',
    'baseline_capacity',
    'history_path',
    'oui_path',
    'ble_scan_enabled',
)


class ConfigError(ValueError):
    """Invalid configuration value."""


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name.upper())
    if value is None or value.strip() == '':
        return None
    return value.strip()


def _coerce(name: str, value: Any, kind: type) -> Any:
    if value is None:
        return None
    try:
        if kind is bool:
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in _TRUE_VALUES
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f'Invalid value for {name}: {value!r}') from e


@dataclass
class SweepConfig:
    min_severity: float = MIN_SEVERITY_SCORE
    correlation_window: float = CORRELATION_WINDOW_SECONDS
    max_signal_samples: int = MAX_SIGNAL_SAMPLES
    baseline_capacity: int = BASELINE_CAPACITY
    baseline_multiplier: float = BASELINE_MULTIPLIER
    tracker_min_span: float = TRACKER_MIN_SPAN
    tracker_max_span: float = TRACKER_MAX_SPAN
    history_path: str = DEFAULT_HISTORY_FILE
    oui_path: Optional[str] = None
    ble_scan_enabled: bool = False

    mqtt_enabled: bool = False
    mqtt_broker_host: str = DEFAULT_MQTT_HOST
    mqtt_broker_port: int = DEFAULT_MQTT_PORT
    mqtt_username: str = ''
    mqtt_password: str = ''
    mqtt_use_tls: bool = False
    mqtt_client_id: str = DEFAULT_MQTT_CLIENT_ID
    mqtt_topic_prefix: str = DEFAULT_MQTT_TOPIC_PREFIX
    mqtt_qos: int = DEFAULT_MQTT_QOS

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_env(cls) -> 'SweepConfig':
        """Build a config from SWEEP_* environment variables."""
        overrides = {}
        for f in fields(cls):
            raw = _env(f.name)
            if raw is not None:
                overrides[f.name] = _coerce(f.name, raw, _field_type(f.name))
        config = cls(**overrides)
        if overrides:
            logger.info(f"Configuration overrides from environment: {sorted(overrides)}")
        return config

    def validate(self) -> None:
        if not 0 <= self.min_severity <= 100:
            raise ConfigError('min_severity must be between 0 and 100')
        if self.correlation_window <= 0:
            raise ConfigError('correlation_window must be positive')
        if self.max_signal_samples < 1:
            raise ConfigError('max_signal_samples must be at least 1')
        if self.baseline_capacity <= BASELINE_MIN_SAMPLES:
            raise ConfigError(f'baseline_capacity must exceed {BASELINE_MIN_SAMPLES}')
        if self.baseline_multiplier <= 0:
            raise ConfigError('baseline_multiplier must be positive')
        if not 0 <= self.tracker_min_span <= self.tracker_max_span:
            raise ConfigError('tracker spans must satisfy 0 <= min <= max')
        if not 1 <= self.mqtt_broker_port <= 65535:
            raise ConfigError('mqtt_broker_port must be a valid TCP port')
        if self.mqtt_qos not in (0, 1, 2):
            raise ConfigError('mqtt_qos must be 0, 1 or 2')

    def update(self, values: dict) -> list[str]:
        """
        Apply runtime changes.

        Unknown keys are ignored. A masked password ('***') leaves the stored
        password untouched. Nothing is applied if any value is invalid or
        if a STARTUP_ONLY_FIELDS entry would change.

        Returns:
            Names of the fields that changed.
        """
        known = {f.name for f in fields(self)}
        candidate = asdict(self)
        for key, value in values.items():
            if key not in known:
                continue
            if key == 'mqtt_password' and value == '***':
                continue
            candidate[key] = _coerce(key, value, _field_type(key))

        validated = SweepConfig(**candidate)
        changed = [
            f.name for f in fields(self)
            if getattr(validated, f.name) != getattr(self, f.name)
        ]
        frozen = [name for name in changed if name in STARTUP_ONLY_FIELDS]
        if frozen:
            raise ConfigError(f"{', '.join(frozen)} can only be set at startup")
        for name in changed:
            setattr(self, name, getattr(validated, name))
        if changed:
            logger.info(f"Configuration updated: {changed}")
        return changed

    def to_dict(self) -> dict:
        data = asdict(self)
        data['mqtt_password'] = '***' if self.mqtt_password else ''
        return data


_FIELD_TYPES = {
    'min_severity': float,
    'correlation_window': float,
    'max_signal_samples': int,
    'baseline_capacity': int,
    'baseline_multiplier': float,
    'tracker_min_span': float,
    'tracker_max_span': float,
    'history_path': str,
    'oui_path': str,
    'ble_scan_enabled': bool,
    'mqtt_enabled': bool,
    'mqtt_broker_host': str,
    'mqtt_broker_port': int,
    'mqtt_username': str,
    'mqtt_password': str,
    'mqtt_use_tls': bool,
    'mqtt_client_id': str,
    'mqtt_topic_prefix': str,
    'mqtt_qos': int,
}


def _field_type(name: str) -> type:
    return _FIELD_TYPES[name]
