"""
Data models for the sweep pipeline.

Tracked entities, their bounded signal histories, transient anomaly events
and the read-only scan result projection, plus the reference JSON encoding
used by the history collaborator.
"""

from __future__ import annotations

import json
import math
import statistics
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from .constants import MAX_SIGNAL_SAMPLES


class InvalidSampleError(ValueError):
    """Raised when a sample value is NaN or infinite."""


class DeviceCategory(str, Enum):
    """Sensor category a tracked entity was observed through."""
    BLUETOOTH = 'bluetooth'   # short-range radio
    WIFI = 'wifi'             # local network
    EMF = 'emf'               # magnetic field
    IR = 'ir'                 # optical reflection
    ACOUSTIC = 'acoustic'

    def __str__(self) -> str:
        return self.value


class ThreatLevel(str, Enum):
    """Discrete threat tier derived from a severity score."""
    LOW = 'low'
    MODERATE = 'moderate'
    HIGH = 'high'
    CRITICAL = 'critical'

    def __str__(self) -> str:
        return self.value


def validate_value(value: float) -> float:
    """Return value as float, raising InvalidSampleError if it is not finite."""
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidSampleError(f'Sample value {value!r} is not numeric') from e
    if not math.isfinite(number):
        raise InvalidSampleError(f'Sample value {value!r} is not finite')
    return number


@dataclass(frozen=True)
class SignalSample:
    """A single timestamped scalar reading (signal strength or magnitude)."""
    timestamp: datetime
    value: float

    def __post_init__(self) -> None:
        object.__setattr__(self, 'value', validate_value(self.value))

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'rssi': self.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SignalSample:
        return cls(
            timestamp=datetime.fromisoformat(data['timestamp']),
            value=data['rssi'],
        )


class SignalHistory:
    """
    Bounded, insertion-ordered buffer of signal samples.

    The oldest sample is dropped once capacity is reached. Not thread-safe;
    the owning entity's registry serialises access.
    """

    def __init__(self, capacity: int = MAX_SIGNAL_SAMPLES):
        if capacity < 1:
            raise ValueError('SignalHistory capacity must be at least 1')
        self._samples: deque[SignalSample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    def append(self, sample: SignalSample) -> None:
        self._samples.append(sample)

    def current(self) -> Optional[SignalSample]:
        return self._samples[-1] if self._samples else None

    def first(self) -> Optional[SignalSample]:
        return self._samples[0] if self._samples else None

    def values(self) -> list[float]:
        return [s.value for s in self._samples]

    def mean(self) -> float:
        if not self._samples:
            return 0.0
        return statistics.fmean(self.values())

    def variance(self) -> float:
        """Population variance of retained values (0 with fewer than 2 samples)."""
        if len(self._samples) < 2:
            return 0.0
        return statistics.pvariance(self.values())

    def duration_seconds(self) -> float:
        """Seconds between the first and last retained sample."""
        if len(self._samples) < 2:
            return 0.0
        return (self._samples[-1].timestamp - self._samples[0].timestamp).total_seconds()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[SignalSample]:
        return iter(list(self._samples))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SignalHistory):
            return NotImplemented
        return list(self._samples) == list(other._samples)

    def __repr__(self) -> str:
        return f'SignalHistory(len={len(self)}, capacity={self.capacity})'


@dataclass
class TrackedEntity:
    """
    One physical source observed by a detector.

    Created on first observation of an identifier and mutated in place on
    every later observation. Owned by the EntityRegistry.
    """
    name: str
    type: DeviceCategory
    identifier: str
    manufacturer: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    current_rssi: Optional[float] = None
    signal_history: SignalHistory = field(default_factory=SignalHistory)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    ssid: Optional[str] = None
    timestamp: Optional[datetime] = None

    threat_level: ThreatLevel = ThreatLevel.LOW
    severity_score: float = 0.0
    is_static: bool = False
    device_notes: Optional[str] = None

    # Runtime-only state, not part of the stored record
    is_tracker: bool = field(default=False, compare=False)
    magnitude_score: Optional[float] = field(default=None, compare=False)

    @property
    def first_seen(self) -> Optional[datetime]:
        sample = self.signal_history.first()
        return sample.timestamp if sample else self.timestamp

    @property
    def duration_seconds(self) -> float:
        return self.signal_history.duration_seconds()

    def to_dict(self) -> dict:
        """Encode using the reference record schema, omitting absent optionals."""
        data: dict[str, Any] = {
            'id': self.id,
            'name': self.name,
            'type': self.type.value,
            'identifier': self.identifier,
        }
        _put_if_present(data, 'manufacturer', self.manufacturer)
        _put_if_present(data, 'currentRSSI', self.current_rssi)
        data['signalHistory'] = [s.to_dict() for s in self.signal_history]
        _put_if_present(data, 'latitude', self.latitude)
        _put_if_present(data, 'longitude', self.longitude)
        _put_if_present(data, 'ssid', self.ssid)
        _put_if_present(
            data, 'timestamp', self.timestamp.isoformat() if self.timestamp else None
        )
        data['threatLevel'] = self.threat_level.value
        data['severityScore'] = self.severity_score
        data['isStatic'] = self.is_static
        _put_if_present(data, 'deviceNotes', self.device_notes)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> TrackedEntity:
        samples = data.get('signalHistory', [])
        history = SignalHistory(capacity=max(MAX_SIGNAL_SAMPLES, len(samples)))
        for sample in samples:
            history.append(SignalSample.from_dict(sample))

        timestamp = data.get('timestamp')
        return cls(
            id=data['id'],
            name=data['name'],
            type=DeviceCategory(data['type']),
            identifier=data['identifier'],
            manufacturer=data.get('manufacturer'),
            current_rssi=data.get('currentRSSI'),
            signal_history=history,
            latitude=data.get('latitude'),
            longitude=data.get('longitude'),
            ssid=data.get('ssid'),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
            threat_level=ThreatLevel(data['threatLevel']),
            severity_score=float(data['severityScore']),
            is_static=bool(data.get('isStatic', False)),
            device_notes=data.get('deviceNotes'),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str) -> TrackedEntity:
        return cls.from_dict(json.loads(payload))


@dataclass(frozen=True)
class AnomalyEvent:
    """A detector firing, held only inside the correlation window."""
    timestamp: datetime
    source: str

    def to_dict(self) -> dict:
        return {'timestamp': self.timestamp.isoformat(), 'source': self.source}


@dataclass(frozen=True)
class CorrelationAlert:
    """Raised when more than one distinct source fired inside the window."""
    sources: frozenset[str]
    events: tuple[AnomalyEvent, ...]
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            'sources': sorted(self.sources),
            'events': [e.to_dict() for e in self.events],
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class ScanResult:
    """Read-only projection of a tracked entity for the published result set."""
    device: TrackedEntity
    type: DeviceCategory
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def identifier(self) -> str:
        return self.device.identifier

    @property
    def severity_score(self) -> float:
        return self.device.severity_score

    @property
    def threat_level(self) -> ThreatLevel:
        return self.device.threat_level

    @property
    def duration(self) -> float:
        """Seconds between first and last recorded signal."""
        return self.device.signal_history.duration_seconds()

    @property
    def last_seen(self) -> datetime:
        return self.device.timestamp or datetime.min

    @property
    def section_key(self) -> str:
        return f'{self.type.value.capitalize()} - {self.threat_level.value.capitalize()}'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'device': self.device.to_dict(),
            'type': self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScanResult:
        return cls(
            id=data['id'],
            device=TrackedEntity.from_dict(data['device']),
            type=DeviceCategory(data['type']),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str) -> ScanResult:
        return cls.from_dict(json.loads(payload))


def _put_if_present(data: dict, key: str, value: Any) -> None:
    if value is not None:
        data[key] = value
