"""
Sweep-specific constants for the multi-sensor threat pipeline.
"""

from __future__ import annotations

# =============================================================================
# SIGNAL HISTORY
# =============================================================================

# Samples retained per tracked entity before the oldest is dropped
MAX_SIGNAL_SAMPLES = 100

# =============================================================================
# SEVERITY SCORING
# =============================================================================

# Stability component
STABILITY_MIN_SAMPLES = 5
STABILITY_SCORE_STABLE = 30.0
STABILITY_SCORE_UNSTABLE = 10.0

# Duration component (saturates after 3 seconds)
DURATION_SCORE_MAX = 30.0
DURATION_SCORE_PER_SECOND = 10.0

# RSSI normalisation: -100 dBm -> 0
RSSI_FLOOR = -100

SEVERITY_MIN = 0.0
SEVERITY_MAX = 100.0

# Tier boundaries (lower bound inclusive)
TIER_MODERATE = 30.0
TIER_HIGH = 60.0
TIER_CRITICAL = 85.0

# Persistent trackers never score below this
TRACKER_SEVERITY_FLOOR = 85.0

# =============================================================================
# ADAPTIVE BASELINE (MAGNETOMETER)
# =============================================================================

BASELINE_CAPACITY = 1000
BASELINE_MULTIPLIER = 0.4
BASELINE_MIN_SAMPLES = 10          # baseline recomputed once buffer > this
BASELINE_INITIAL_MAGNITUDE = 50.0  # µT, typical geomagnetic field
BASELINE_INITIAL_THRESHOLD = 20.0
FREQUENCY_MIN_SAMPLES = 100
MAGNITUDE_EXCESS_SCALE = 200.0     # µT above baseline that saturates the score
FREQUENCY_SCALE = 10.0             # Hz that saturates the score
ANOMALY_CRITICAL_SCORE = 90.0
ANOMALY_HIGH_SCORE = 75.0
FEEDBACK_MIN_SCORE = 80.0
FEEDBACK_RETRIGGER_SECONDS = 1.0
RF_SOURCE_MIN_FREQUENCY = 1.0      # Hz, above this the anomaly is named an RF source

# Motion correlation
MOTION_ROTATION_THRESHOLD = 0.5    # rad/s
MOTION_ACCEL_THRESHOLD = 0.2       # g
MOTION_CORRELATION_SECONDS = 0.5

# =============================================================================
# PERSISTENCE HEURISTICS
# =============================================================================

TRACKER_SIGHTING_WINDOW = 600      # seconds of sightings retained
TRACKER_MIN_SIGHTINGS = 3
TRACKER_MIN_SPAN = 60              # seconds
TRACKER_MAX_SPAN = 600             # seconds

SPOOF_MAX_HISTORY = 10
SPOOF_MAX_DISTINCT = 2             # more distinct secondaries than this is suspicious

RAPID_SWITCH_RECENT = 5
RAPID_SWITCH_DISTINCT = 3
RAPID_SWITCH_WINDOW = 60           # seconds

STATIC_MIN_SAMPLES = 10
STATIC_VARIANCE_THRESHOLD = 5.0
STATIC_RSSI_HISTORY = 50

# =============================================================================
# CORRELATION
# =============================================================================

CORRELATION_WINDOW_SECONDS = 10.0
MAX_CORRELATION_EVENTS = 1000

# Correlation source tags
SOURCE_EMF = 'emf'
SOURCE_AIRTAG = 'airtag'
SOURCE_IR = 'ir'
SOURCE_ULTRASONIC = 'ultrasonic'
SOURCE_WIFI_PREFIX = 'wifi-'

# =============================================================================
# AGGREGATION / PERSISTENCE
# =============================================================================

MIN_SEVERITY_SCORE = 50.0
HISTORY_MAX_RECORDS = 1000
HISTORY_QUEUE_SIZE = 100
DEFAULT_HISTORY_FILE = 'scan_history.json'

# =============================================================================
# OPTICAL (IR REFLECTION GRID)
# =============================================================================

OPTICAL_GRID_SIZE = 16
OPTICAL_BRIGHTNESS_THRESHOLD = 0.7
OPTICAL_MIN_HITS = 5               # hits required before a cell becomes an entity

# =============================================================================
# ACOUSTIC (ULTRASONIC)
# =============================================================================

ULTRASONIC_LOW_HZ = 18000.0
ULTRASONIC_HIGH_HZ = 22000.0
ULTRASONIC_THRESHOLD = 0.1
ULTRASONIC_SEVERITY_PER_RATIO = 50.0

# =============================================================================
# LOCAL NETWORK
# =============================================================================

DEFAULT_MDNS_DOMAIN = 'local'

# =============================================================================
# MANUFACTURER LOOKUP
# =============================================================================

LOOKUP_WAIT_SECONDS = 2.0

# Display names
NAME_UNKNOWN_BLE = 'Unknown BLE Device'
NAME_RF_SOURCE = 'RF Source'
NAME_MAGNETIC_DISTURBANCE = 'Magnetic Disturbance'
NAME_REFLECTIVE_SURFACE = 'Reflective Surface'
NAME_ULTRASONIC_SOURCE = 'Ultrasonic Source'
NAME_UDP_DEVICE = 'UDP Device'
