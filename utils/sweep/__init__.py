"""
Multi-sensor counter-surveillance sweep core.

Provides per-entity signal histories and severity scoring, an adaptive
baseline anomaly detector, a time-windowed cross-source correlation
engine, and the aggregation pipeline that merges every detector into one
ranked result set.
"""

from .baseline import AdaptiveBaselineDetector, BaselineReading, magnitude_from_vector
from .ble_source import BLEAdvertisementSource, company_name
from .config import ConfigError, SweepConfig
from .correlation import CorrelatedAnomalyEngine
from .detectors import (
    AcousticDetector,
    BluetoothDetector,
    Detector,
    MagneticDetector,
    NetworkDetector,
    OpticalDetector,
)
from .events import EventChannel
from .heuristics import SpoofingHeuristic, TrackerFollowingHeuristic, is_static
from .history import ScanHistoryManager
from .lookup import ManufacturerLookup, normalize_prefix
from .models import (
    AnomalyEvent,
    CorrelationAlert,
    DeviceCategory,
    InvalidSampleError,
    ScanResult,
    SignalHistory,
    SignalSample,
    ThreatLevel,
    TrackedEntity,
)
from .pipeline import AggregationPipeline
from .registry import CategoryUpdate, EntityRegistry
from .scoring import score, tier_for_score
from .session import SweepSession

__all__ = [
    # Session
    'SweepSession',
    'SweepConfig',
    'ConfigError',

    # Models
    'SignalSample',
    'SignalHistory',
    'TrackedEntity',
    'ScanResult',
    'AnomalyEvent',
    'CorrelationAlert',
    'DeviceCategory',
    'ThreatLevel',
    'InvalidSampleError',

    # Scoring
    'score',
    'tier_for_score',

    # Baseline detection
    'AdaptiveBaselineDetector',
    'BaselineReading',
    'magnitude_from_vector',

    # Heuristics
    'TrackerFollowingHeuristic',
    'SpoofingHeuristic',
    'is_static',

    # Correlation and aggregation
    'CorrelatedAnomalyEngine',
    'EntityRegistry',
    'CategoryUpdate',
    'AggregationPipeline',
    'EventChannel',

    # Detectors
    'Detector',
    'BluetoothDetector',
    'NetworkDetector',
    'MagneticDetector',
    'OpticalDetector',
    'AcousticDetector',

    # Collaborators
    'ManufacturerLookup',
    'normalize_prefix',
    'ScanHistoryManager',
    'BLEAdvertisementSource',
    'company_name',
]
