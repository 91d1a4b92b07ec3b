"""
Entity registry for all sweep detectors.

Keyed store with one TrackedEntity per stable identifier. Handles sample
ingestion, metadata merging, severity recomputation and per-category change
notification.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .constants import MAX_SIGNAL_SAMPLES
from .events import EventChannel
from .models import (
    DeviceCategory,
    SignalHistory,
    SignalSample,
    TrackedEntity,
    validate_value,
)
from .scoring import score

logger = logging.getLogger('sweep.registry')


@dataclass(frozen=True)
class CategoryUpdate:
    """Change notification carrying the current view of one category."""
    category: DeviceCategory
    entities: tuple[TrackedEntity, ...]
    sequence: Optional[int] = None


class EntityRegistry:
    """
    Single source of truth for tracked entities.

    All mutation happens under one lock. Change notifications are published
    after the lock is released, carrying a snapshot of the changed
    category's entities. Snapshots are numbered in the order they were
    taken so a consumer can discard one that arrives late.
    """

    def __init__(self, max_signal_samples: int = MAX_SIGNAL_SAMPLES):
        self._entities: dict[str, TrackedEntity] = {}
        self._lock = threading.RLock()
        self._max_signal_samples = max_signal_samples
        self._sequence = 0
        self._channels: dict[DeviceCategory, EventChannel[CategoryUpdate]] = {
            category: EventChannel(f'registry.{category.value}')
            for category in DeviceCategory
        }

    def upsert(
        self,
        identifier: str,
        category: DeviceCategory,
        name: Optional[str] = None,
        value: Optional[float] = None,
        timestamp: Optional[datetime] = None,
        *,
        magnitude_score: Optional[float] = None,
        manufacturer: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        ssid: Optional[str] = None,
        device_notes: Optional[str] = None,
        is_static: Optional[bool] = None,
    ) -> TrackedEntity:
        """
        Create or update the entity for an identifier.

        Args:
            identifier: Stable identifier of the physical source.
            category: Sensor category of the observation.
            name: Display name used when the entity is created.
            value: Sample value to append (RSSI, magnitude, brightness).
            timestamp: Observation time (defaults to now).
            magnitude_score: Detector-supplied normalized magnitude in [0, 100].
            manufacturer, latitude, longitude, ssid, device_notes, is_static:
                Metadata merged into the entity when not None.

        Returns:
            The created or updated TrackedEntity.

        Raises:
            InvalidSampleError: if value is NaN or infinite. Nothing is
                created or modified in that case.

        A sample older than the entity's latest one is dropped with a
        warning; the entity is returned unchanged and nothing is published.
        """
        ts = timestamp or datetime.now()
        if value is not None:
            value = validate_value(value)

        with self._lock:
            entity = self._entities.get(identifier)
            if entity is not None and value is not None:
                latest = entity.signal_history.current()
                if latest is not None and ts < latest.timestamp:
                    logger.warning(
                        f"Dropping out-of-order sample for {identifier}: "
                        f"{ts.isoformat()} is before {latest.timestamp.isoformat()}"
                    )
                    return entity

            if entity is None:
                entity = TrackedEntity(
                    name=name or identifier,
                    type=category,
                    identifier=identifier,
                    manufacturer=manufacturer,
                    signal_history=SignalHistory(self._max_signal_samples),
                )
                self._entities[identifier] = entity
                logger.debug(f"New {category.value} entity: {identifier}")
            elif entity.type != category:
                logger.warning(
                    f"Identifier {identifier} reported by {category.value}, "
                    f"already tracked as {entity.type.value}"
                )

            if value is not None:
                entity.signal_history.append(SignalSample(timestamp=ts, value=value))
                entity.current_rssi = value
            entity.timestamp = ts

            if magnitude_score is not None:
                entity.magnitude_score = magnitude_score
            self._merge_metadata(
                entity,
                manufacturer=manufacturer,
                latitude=latitude,
                longitude=longitude,
                ssid=ssid,
                device_notes=device_notes,
                is_static=is_static,
            )
            self._rescore(entity)
            update = self._snapshot(entity.type)

        self._channels[update.category].publish(update)
        return entity

    def mark_tracker(self, identifier: str) -> Optional[TrackedEntity]:
        """Flag an entity as a persistent tracker and rescore it."""
        with self._lock:
            entity = self._entities.get(identifier)
            if entity is None:
                return None
            entity.is_tracker = True
            entity.is_static = False
            self._rescore(entity)
            update = self._snapshot(entity.type)

        self._channels[update.category].publish(update)
        return entity

    def get(self, identifier: str) -> Optional[TrackedEntity]:
        with self._lock:
            return self._entities.get(identifier)

    def entities(self, category: Optional[DeviceCategory] = None) -> list[TrackedEntity]:
        with self._lock:
            if category is None:
                return list(self._entities.values())
            return [e for e in self._entities.values() if e.type == category]

    def snapshot(self, category: DeviceCategory) -> CategoryUpdate:
        with self._lock:
            return self._snapshot(category)

    def subscribe(
        self,
        callback: Callable[[CategoryUpdate], None],
        category: Optional[DeviceCategory] = None,
    ) -> None:
        """Subscribe to one category's changes, or to every category."""
        categories = [category] if category is not None else list(DeviceCategory)
        for cat in categories:
            self._channels[cat].subscribe(callback)

    def unsubscribe(self, callback: Callable[[CategoryUpdate], None]) -> None:
        for channel in self._channels.values():
            channel.unsubscribe(callback)

    def clear(self) -> None:
        """Drop every entity. Only used when a session ends."""
        with self._lock:
            self._entities.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)

    def __contains__(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self._entities

    def _snapshot(self, category: DeviceCategory) -> CategoryUpdate:
        self._sequence += 1
        return CategoryUpdate(
            category=category,
            entities=tuple(e for e in self._entities.values() if e.type == category),
            sequence=self._sequence,
        )

    def _rescore(self, entity: TrackedEntity) -> None:
        entity.severity_score, entity.threat_level = score(
            entity.signal_history,
            is_persistent_tracker=entity.is_tracker,
            category=entity.type,
            magnitude_score=entity.magnitude_score,
        )

    def _merge_metadata(self, entity: TrackedEntity, **metadata) -> None:
        """Merge metadata into the entity, preferring non-None values."""
        for key, value in metadata.items():
            if value is not None:
                setattr(entity, key, value)
