"""
Per-category detector entry points.

Each detector receives already-acquired samples from its sensor
collaborator, owns its own buffers, and feeds the shared EntityRegistry and
CorrelatedAnomalyEngine. A stopped detector ignores input and holds no
buffered state; its entities stay in the registry.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from datetime import datetime
from typing import Callable, Optional

import numpy as np

from .baseline import AdaptiveBaselineDetector, BaselineReading, magnitude_from_vector
from .constants import (
    DEFAULT_MDNS_DOMAIN,
    MOTION_ACCEL_THRESHOLD,
    MOTION_CORRELATION_SECONDS,
    MOTION_ROTATION_THRESHOLD,
    NAME_MAGNETIC_DISTURBANCE,
    NAME_REFLECTIVE_SURFACE,
    NAME_RF_SOURCE,
    NAME_UDP_DEVICE,
    NAME_ULTRASONIC_SOURCE,
    NAME_UNKNOWN_BLE,
    OPTICAL_BRIGHTNESS_THRESHOLD,
    OPTICAL_GRID_SIZE,
    OPTICAL_MIN_HITS,
    RF_SOURCE_MIN_FREQUENCY,
    SOURCE_AIRTAG,
    SOURCE_EMF,
    SOURCE_IR,
    SOURCE_ULTRASONIC,
    SOURCE_WIFI_PREFIX,
    STATIC_RSSI_HISTORY,
    ULTRASONIC_HIGH_HZ,
    ULTRASONIC_LOW_HZ,
    ULTRASONIC_SEVERITY_PER_RATIO,
    ULTRASONIC_THRESHOLD,
)
from .correlation import CorrelatedAnomalyEngine
from .heuristics import SpoofingHeuristic, TrackerFollowingHeuristic, is_static
from .lookup import ManufacturerLookup
from .models import DeviceCategory, InvalidSampleError, TrackedEntity, validate_value
from .registry import EntityRegistry

logger = logging.getLogger('sweep.detectors')


class Detector:
    """
    Common lifecycle and location state for category detectors.

    Detectors are created stopped; samples are ignored until start().
    """

    category: DeviceCategory

    def __init__(
        self,
        registry: EntityRegistry,
        engine: CorrelatedAnomalyEngine,
        lookup: Optional[ManufacturerLookup] = None,
    ):
        self.registry = registry
        self.engine = engine
        self.lookup = lookup
        self._active = False
        self._location: Optional[tuple[float, float]] = None

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def location(self) -> Optional[tuple[float, float]]:
        return self._location

    def start(self) -> None:
        self._active = True
        logger.info(f"{self.category.value} detector started")

    def stop(self) -> None:
        """Stop accepting samples and release buffered state."""
        self._active = False
        self._release()
        logger.info(f"{self.category.value} detector stopped")

    def reset(self) -> None:
        """Forget buffered state and heuristic flags without stopping."""
        self._release()
        logger.info(f"{self.category.value} detector reset")

    def update_location(self, latitude: float, longitude: float) -> None:
        self._location = (latitude, longitude)

    def _release(self) -> None:
        pass

    def _resolve_location(
        self,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> tuple[Optional[float], Optional[float]]:
        if latitude is not None and longitude is not None:
            return latitude, longitude
        if self._location is not None:
            return self._location
        return None, None

    def _lookup_manufacturer(self, identifier: str, *candidates: Optional[str]) -> Optional[str]:
        """
        Vendor for an identifier that has none yet.

        Never waits for the OUI table: until it is loaded the lookup is a
        miss and is retried on the next sample.
        """
        if self.lookup is None:
            return None
        entity = self.registry.get(identifier)
        if entity is not None and entity.manufacturer is not None:
            return None
        for candidate in candidates:
            if candidate:
                vendor = self.lookup.lookup(candidate, timeout=0)
                if vendor:
                    return vendor
        return None

    def _accept(self, value: float, what: str) -> Optional[float]:
        """Validate a sample value at the detector boundary."""
        try:
            return validate_value(value)
        except InvalidSampleError as e:
            logger.warning(f"Dropping {self.category.value} {what}: {e}")
            return None


# =============================================================================
# SHORT-RANGE RADIO
# =============================================================================

class BluetoothDetector(Detector):
    """
    Direct RSSI ingestion for BLE advertisements.

    Maintains a short RSSI history per identifier for static detection and
    runs the tracker-following heuristic on every sighting.
    """

    category = DeviceCategory.BLUETOOTH

    def __init__(
        self,
        registry: EntityRegistry,
        engine: CorrelatedAnomalyEngine,
        lookup: Optional[ManufacturerLookup] = None,
        tracker_heuristic: Optional[TrackerFollowingHeuristic] = None,
    ):
        super().__init__(registry, engine, lookup)
        self.tracker_heuristic = tracker_heuristic or TrackerFollowingHeuristic()
        self._rssi_history: dict[str, deque[float]] = {}

    def process_advertisement(
        self,
        identifier: str,
        rssi: float,
        name: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        manufacturer_prefix: Optional[str] = None,
        manufacturer: Optional[str] = None,
    ) -> Optional[TrackedEntity]:
        """
        Ingest one advertisement.

        Args:
            identifier: Peripheral identifier (address or platform UUID).
            rssi: Received signal strength in dBm.
            name: Advertised local name.
            timestamp: Observation time (defaults to now).
            latitude, longitude: Observer location, falls back to the last
                known location.
            manufacturer_prefix: Prefix derived from manufacturer data, used
                when the identifier itself does not resolve a vendor.
            manufacturer: Vendor already decoded from the advertisement,
                takes precedence over the prefix lookup.

        Returns:
            The updated entity, or None if the sample was dropped.
        """
        if not self._active:
            return None
        rssi = self._accept(rssi, f'RSSI for {identifier}')
        if rssi is None:
            return None

        ts = timestamp or datetime.now()
        lat, lon = self._resolve_location(latitude, longitude)

        history = self._rssi_history.setdefault(identifier, deque(maxlen=STATIC_RSSI_HISTORY))
        history.append(rssi)

        if manufacturer is None:
            manufacturer = self._lookup_manufacturer(identifier, identifier, manufacturer_prefix)

        entity = self.registry.upsert(
            identifier,
            self.category,
            name=name or NAME_UNKNOWN_BLE,
            value=rssi,
            timestamp=ts,
            manufacturer=manufacturer,
            latitude=lat,
            longitude=lon,
            is_static=is_static(history),
        )

        if self.tracker_heuristic.record_sighting(identifier, ts):
            logger.warning(f"Suspected tracker following: {entity.name} ({identifier})")
            self.registry.mark_tracker(identifier)
            self.engine.register_event(SOURCE_AIRTAG, ts)

        return entity

    def _release(self) -> None:
        self._rssi_history.clear()
        self.tracker_heuristic.reset()


# =============================================================================
# LOCAL NETWORK
# =============================================================================

class NetworkDetector(Detector):
    """
    Access point, service discovery and broadcast sender ingestion.

    Watches the SSID -> BSSID pairing for spoofed access points and raises a
    correlation event whenever the connected network changes.
    """

    category = DeviceCategory.WIFI

    def __init__(
        self,
        registry: EntityRegistry,
        engine: CorrelatedAnomalyEngine,
        lookup: Optional[ManufacturerLookup] = None,
        spoofing_heuristic: Optional[SpoofingHeuristic] = None,
    ):
        super().__init__(registry, engine, lookup)
        self.spoofing_heuristic = spoofing_heuristic or SpoofingHeuristic()
        self.current_ssid: Optional[str] = None
        self.current_bssid: Optional[str] = None
        self._suspicious_ssids: set[str] = set()

    @property
    def is_suspicious(self) -> bool:
        return bool(self._suspicious_ssids)

    @property
    def suspicious_ssids(self) -> set[str]:
        return set(self._suspicious_ssids)

    def process_access_point(
        self,
        ssid: str,
        bssid: str,
        rssi: float,
        timestamp: Optional[datetime] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Optional[TrackedEntity]:
        """Ingest the currently associated access point."""
        if not self._active:
            return None
        rssi = self._accept(rssi, f'RSSI for {bssid}')
        if rssi is None:
            return None

        ts = timestamp or datetime.now()
        bssid = bssid.upper()
        lat, lon = self._resolve_location(latitude, longitude)

        if self.current_ssid != ssid or self.current_bssid != bssid:
            self.current_ssid = ssid
            self.current_bssid = bssid
            logger.info(f"SSID/BSSID change: {ssid} / {bssid}")
            self.engine.register_event(f'{SOURCE_WIFI_PREFIX}{ssid}', ts)

        notes = None
        if self.spoofing_heuristic.observe(ssid, bssid, ts):
            if ssid not in self._suspicious_ssids:
                logger.warning(f"Possible spoofed network '{ssid}'")
            self._suspicious_ssids.add(ssid)
            count = len(self.spoofing_heuristic.secondaries(ssid))
            notes = f'Possible spoofed network: {count} hardware addresses for {ssid}'
        if self.spoofing_heuristic.is_rapid_switching(ssid, ts):
            logger.warning(f"Rapid BSSID switching detected for '{ssid}'")
            self._suspicious_ssids.add(ssid)

        is_new = bssid not in self.registry
        return self.registry.upsert(
            bssid,
            self.category,
            name=ssid,
            value=rssi,
            timestamp=ts,
            manufacturer=self._lookup_manufacturer(bssid, bssid),
            latitude=lat,
            longitude=lon,
            ssid=ssid,
            device_notes=notes,
            is_static=True if is_new else None,
        )

    def process_service(
        self,
        name: str,
        service_type: str,
        domain: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[TrackedEntity]:
        """Ingest a discovered network service (mDNS/DNS-SD)."""
        if not self._active:
            return None

        identifier = f'{name}.{service_type}.{domain or DEFAULT_MDNS_DOMAIN}'
        lat, lon = self._resolve_location(None, None)
        is_new = identifier not in self.registry
        return self.registry.upsert(
            identifier,
            self.category,
            name=name,
            timestamp=timestamp,
            manufacturer=self._lookup_manufacturer(identifier, identifier),
            latitude=lat,
            longitude=lon,
            ssid=self.current_ssid,
            is_static=False if is_new else None,
        )

    def process_broadcast(
        self,
        address: str,
        port: int,
        rssi: float,
        timestamp: Optional[datetime] = None,
    ) -> Optional[TrackedEntity]:
        """Ingest a local broadcast datagram sender."""
        if not self._active:
            return None
        rssi = self._accept(rssi, f'RSSI for {address}')
        if rssi is None:
            return None

        identifier = f'{address}-{port}'
        lat, lon = self._resolve_location(None, None)
        is_new = identifier not in self.registry
        return self.registry.upsert(
            identifier,
            self.category,
            name=NAME_UDP_DEVICE,
            value=rssi,
            timestamp=timestamp,
            latitude=lat,
            longitude=lon,
            ssid=self.current_ssid,
            is_static=False if is_new else None,
        )

    def _release(self) -> None:
        self.spoofing_heuristic.reset()
        self._suspicious_ssids.clear()
        self.current_ssid = None
        self.current_bssid = None


# =============================================================================
# MAGNETIC FIELD
# =============================================================================

class MagneticDetector(Detector):
    """
    Magnetometer anomaly detection on an adaptive baseline.

    Anomalies need a location fix; each becomes an entity keyed by the
    quantized coordinate ("emf_<lat>_<lon>").
    """

    category = DeviceCategory.EMF

    def __init__(
        self,
        registry: EntityRegistry,
        engine: CorrelatedAnomalyEngine,
        baseline: Optional[AdaptiveBaselineDetector] = None,
        feedback: Optional[Callable[[BaselineReading], None]] = None,
    ):
        super().__init__(registry, engine)
        self.baseline = baseline or AdaptiveBaselineDetector()
        self.feedback = feedback
        self._last_anomaly: Optional[datetime] = None
        self._network_notes: Optional[str] = None

    @property
    def last_anomaly(self) -> Optional[datetime]:
        return self._last_anomaly

    def update_network_context(
        self,
        ssid: Optional[str] = None,
        cell_tower: Optional[str] = None,
    ) -> None:
        """Record network context attached as notes to new anomaly entities."""
        notes = []
        if ssid:
            notes.append(f'SSID: {ssid}')
        if cell_tower:
            notes.append(f'Cell Tower: {cell_tower}')
        self._network_notes = ' | '.join(notes) if notes else None

    def process_field(
        self,
        x: float,
        y: float,
        z: float,
        timestamp: Optional[datetime] = None,
    ) -> Optional[BaselineReading]:
        """Ingest a three-axis field sample in µT."""
        if not all(math.isfinite(v) for v in (x, y, z)):
            logger.warning(f"Dropping emf field sample ({x}, {y}, {z})")
            return None
        return self.process_magnitude(magnitude_from_vector(x, y, z), timestamp)

    def process_magnitude(
        self,
        magnitude: float,
        timestamp: Optional[datetime] = None,
    ) -> Optional[BaselineReading]:
        """
        Ingest a field magnitude.

        Returns:
            The baseline reading, or None if the detector is stopped or the
            sample was rejected.
        """
        if not self._active:
            return None
        ts = timestamp or datetime.now()
        try:
            reading = self.baseline.add_sample(magnitude, ts)
        except InvalidSampleError as e:
            logger.warning(f"Dropping emf magnitude: {e}")
            return None

        if reading.is_anomaly:
            self._process_anomaly(reading)
        return reading

    def process_motion(
        self,
        rotation: float,
        acceleration: float,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """
        Check whether device motion coincides with the last anomaly.

        Returns:
            True if significant motion happened within half a second of an
            anomaly, which makes the anomaly likely motion-induced.
        """
        if not self._active or self._last_anomaly is None:
            return False
        ts = timestamp or datetime.now()
        moving = rotation > MOTION_ROTATION_THRESHOLD or acceleration > MOTION_ACCEL_THRESHOLD
        recent = abs((ts - self._last_anomaly).total_seconds()) < MOTION_CORRELATION_SECONDS
        if moving and recent:
            logger.warning(
                f"Motion-correlated EMF anomaly (rotation: {rotation:.2f}, accel: {acceleration:.2f})"
            )
            return True
        return False

    def _process_anomaly(self, reading: BaselineReading) -> None:
        self._last_anomaly = reading.timestamp

        if self._location is None:
            logger.warning("No location fix for EMF anomaly")
            return

        lat, lon = self._location
        identifier = f'emf_{lat:.4f}_{lon:.4f}'
        name = NAME_RF_SOURCE if reading.frequency_hz > RF_SOURCE_MIN_FREQUENCY else NAME_MAGNETIC_DISTURBANCE
        is_new = identifier not in self.registry

        self.registry.upsert(
            identifier,
            self.category,
            name=name,
            value=reading.magnitude,
            timestamp=reading.timestamp,
            magnitude_score=reading.anomaly_score,
            latitude=lat,
            longitude=lon,
            device_notes=self._network_notes if is_new else None,
        )
        self.engine.register_event(SOURCE_EMF, reading.timestamp)

        logger.info(
            f"EMF anomaly @ {name} | Mag: {reading.magnitude:.1f} µT | "
            f"Freq: {reading.frequency_hz:.2f} Hz | Score: {reading.anomaly_score:.1f} "
            f"({reading.level.value})"
        )

        if reading.should_trigger and self.feedback is not None:
            try:
                self.feedback(reading)
            except Exception as e:
                logger.error(f"EMF feedback action failed: {e}")

    def _release(self) -> None:
        self.baseline.reset()
        self._last_anomaly = None


# =============================================================================
# OPTICAL (IR REFLECTION)
# =============================================================================

class OpticalDetector(Detector):
    """
    Reflection grid analysis of illuminated camera frames.

    Each frame is split into a grid of cells; cells that stay brighter than
    the threshold across several frames while the light is on are reported
    as reflective surfaces (possible lenses).
    """

    category = DeviceCategory.IR

    def __init__(
        self,
        registry: EntityRegistry,
        engine: CorrelatedAnomalyEngine,
        lookup: Optional[ManufacturerLookup] = None,
        grid_size: int = OPTICAL_GRID_SIZE,
        brightness_threshold: float = OPTICAL_BRIGHTNESS_THRESHOLD,
        min_hits: int = OPTICAL_MIN_HITS,
    ):
        super().__init__(registry, engine, lookup)
        self.grid_size = grid_size
        self.brightness_threshold = brightness_threshold
        self.min_hits = min_hits
        # (x, y) -> (hit count, running mean brightness)
        self._reflections: dict[tuple[int, int], tuple[int, float]] = {}

    def cell_brightness(self, frame: np.ndarray) -> np.ndarray:
        """
        Mean brightness per grid cell, indexed [y, x], in [0, 1].

        Accepts luminance (H, W) or colour (H, W, C) frames; integer frames
        are scaled from 0-255.
        """
        pixels = np.asarray(frame)
        if np.issubdtype(pixels.dtype, np.integer):
            pixels = pixels.astype(float) / 255.0
        else:
            pixels = pixels.astype(float)
        if pixels.ndim == 3:
            pixels = pixels[..., :3].mean(axis=2)
        if pixels.ndim != 2:
            raise ValueError(f'Expected a 2-D or 3-D frame, got shape {pixels.shape}')

        g = self.grid_size
        height, width = pixels.shape
        cell_h, cell_w = height // g, width // g
        if cell_h == 0 or cell_w == 0:
            raise ValueError(f'Frame {width}x{height} is smaller than the {g}x{g} grid')

        cropped = pixels[:cell_h * g, :cell_w * g]
        return cropped.reshape(g, cell_h, g, cell_w).mean(axis=(1, 3))

    def process_frame(
        self,
        frame: np.ndarray,
        illuminated: bool,
        timestamp: Optional[datetime] = None,
        bssid: Optional[str] = None,
    ) -> list[TrackedEntity]:
        """
        Analyse one frame.

        Args:
            frame: Camera frame as a numpy array.
            illuminated: Whether the torch was on for this frame.
            timestamp: Capture time (defaults to now).
            bssid: Connected access point, used to scope identifiers and
                resolve a manufacturer.

        Returns:
            Entities updated by this frame.
        """
        if not self._active:
            return []
        try:
            cells = self.cell_brightness(frame)
        except ValueError as e:
            logger.warning(f"Dropping optical frame: {e}")
            return []
        if not np.all(np.isfinite(cells)):
            logger.warning("Dropping optical frame with non-finite pixels")
            return []

        ts = timestamp or datetime.now()
        lat, lon = self._resolve_location(None, None)
        updated = []

        for y, x in zip(*np.nonzero(cells > self.brightness_threshold)):
            key = (int(x), int(y))
            brightness = float(cells[y, x])
            count, avg = self._reflections.get(key, (0, 0.0))
            new_avg = (avg * count + brightness) / (count + 1)
            self._reflections[key] = (count + 1, new_avg)

            if count > self.min_hits and illuminated:
                updated.append(self._report(key, new_avg, ts, bssid, lat, lon))

        if updated:
            self.engine.register_event(SOURCE_IR, ts)
        return updated

    def _report(
        self,
        key: tuple[int, int],
        brightness: float,
        timestamp: datetime,
        bssid: Optional[str],
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> TrackedEntity:
        score = int(brightness * 100)
        identifier = f'ir_{key[0]},{key[1]}' + (f'_{bssid.upper()}' if bssid else '')
        is_new = identifier not in self.registry
        entity = self.registry.upsert(
            identifier,
            self.category,
            name=NAME_REFLECTIVE_SURFACE,
            value=score,
            timestamp=timestamp,
            magnitude_score=score,
            manufacturer=self._lookup_manufacturer(identifier, bssid),
            latitude=latitude,
            longitude=longitude,
            device_notes=f'Detected via reflection grid | Brightness: {score}',
        )
        if is_new:
            logger.info(f"IR anomaly: {identifier} [{entity.manufacturer or 'Unknown'}] Brightness: {score}")
        return entity

    def _release(self) -> None:
        self._reflections.clear()


# =============================================================================
# ACOUSTIC (ULTRASONIC)
# =============================================================================

class AcousticDetector(Detector):
    """Ultrasonic beacon detection on microphone buffers via FFT."""

    category = DeviceCategory.ACOUSTIC

    def __init__(
        self,
        registry: EntityRegistry,
        engine: CorrelatedAnomalyEngine,
        low_hz: float = ULTRASONIC_LOW_HZ,
        high_hz: float = ULTRASONIC_HIGH_HZ,
        threshold: float = ULTRASONIC_THRESHOLD,
    ):
        super().__init__(registry, engine)
        self.low_hz = low_hz
        self.high_hz = high_hz
        self.threshold = threshold

    @property
    def identifier(self) -> str:
        return f'ultrasonic_{int(self.low_hz)}_{int(self.high_hz)}'

    def band_peak(self, samples: np.ndarray, sample_rate: float) -> Optional[tuple[float, float]]:
        """
        Strongest spectral component inside the detection band.

        Returns:
            (frequency_hz, magnitude), or None when the band lies above the
            Nyquist frequency for this sample rate.
        """
        signal = np.asarray(samples, dtype=float)
        n = len(signal)
        magnitudes = np.abs(np.fft.rfft(signal)) * 2.0 / n
        freqs = np.fft.rfftfreq(n, d=1.0 / sample_rate)

        band = (freqs >= self.low_hz) & (freqs <= self.high_hz)
        if not np.any(band):
            return None
        index = int(np.argmax(np.where(band, magnitudes, -np.inf)))
        return float(freqs[index]), float(magnitudes[index])

    def process_buffer(
        self,
        samples: np.ndarray,
        sample_rate: float,
        timestamp: Optional[datetime] = None,
    ) -> Optional[TrackedEntity]:
        """
        Analyse one audio buffer (floats in [-1, 1]).

        Returns:
            The ultrasonic source entity when a chirp is detected, else None.
        """
        if not self._active:
            return None
        signal = np.asarray(samples, dtype=float)
        if signal.ndim != 1 or len(signal) < 2:
            logger.warning(f"Dropping acoustic buffer with shape {signal.shape}")
            return None
        if not np.all(np.isfinite(signal)):
            logger.warning("Dropping acoustic buffer with non-finite samples")
            return None

        peak = self.band_peak(signal, sample_rate)
        if peak is None:
            logger.debug(f"Sample rate {sample_rate} Hz cannot resolve the ultrasonic band")
            return None
        frequency, magnitude = peak
        if magnitude <= self.threshold:
            return None

        ts = timestamp or datetime.now()
        score = min(100.0, magnitude / self.threshold * ULTRASONIC_SEVERITY_PER_RATIO)
        lat, lon = self._resolve_location(None, None)

        logger.info(f"Ultrasonic chirp detected at {frequency:.0f} Hz | Magnitude: {magnitude:.3f}")
        entity = self.registry.upsert(
            self.identifier,
            self.category,
            name=NAME_ULTRASONIC_SOURCE,
            value=magnitude,
            timestamp=ts,
            magnitude_score=score,
            latitude=lat,
            longitude=lon,
            device_notes=f'Peak {frequency:.0f} Hz',
        )
        self.engine.register_event(SOURCE_ULTRASONIC, ts)
        return entity
