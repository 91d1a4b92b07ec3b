"""
Fan-in aggregation of every detector's entity stream.

The pipeline keeps the latest view of each category, merges them into one
result set de-duplicated by identifier, drops entries below the minimum
severity and republishes the accepted list on every upstream change.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, Optional

from .constants import MIN_SEVERITY_SCORE
from .events import EventChannel
from .models import DeviceCategory, ScanResult, TrackedEntity
from .registry import CategoryUpdate, EntityRegistry

logger = logging.getLogger('sweep.pipeline')

ResultSink = Callable[[list[ScanResult]], None]


class AggregationPipeline:
    """
    Merges per-category entity views into the published scan result set.

    Recomputation runs synchronously under the pipeline's own lock whenever
    an upstream update arrives, so subscribers always see the latest state.
    Bursts may be observed as their final state only.
    Registry snapshots older than the one already applied for a category
    are ignored.
    """

    def __init__(
        self,
        min_severity: float = MIN_SEVERITY_SCORE,
        sink: Optional[ResultSink] = None,
    ):
        self._min_severity = min_severity
        self._sink = sink
        self._lock = threading.RLock()

        self._views: dict[DeviceCategory, tuple[TrackedEntity, ...]] = {}
        self._sequences: dict[DeviceCategory, int] = {}
        self._result_cache: dict[str, ScanResult] = {}
        self._published: list[ScanResult] = []
        self._accepted_signature: Optional[tuple] = None
        self._publish_count = 0
        self._save_count = 0

        self._channel: EventChannel[list[ScanResult]] = EventChannel('pipeline')
        self._registries: list[EntityRegistry] = []

    @property
    def min_severity(self) -> float:
        return self._min_severity

    def attach(self, registry: EntityRegistry) -> None:
        """Subscribe to every category view of a registry."""
        registry.subscribe(self._on_registry_update)
        self._registries.append(registry)

    def detach(self, registry: EntityRegistry) -> None:
        registry.unsubscribe(self._on_registry_update)
        if registry in self._registries:
            self._registries.remove(registry)

    def update(
        self,
        category: DeviceCategory,
        entities: Iterable[TrackedEntity],
        sequence: Optional[int] = None,
    ) -> list[ScanResult]:
        """
        Replace one category's view and republish.

        Args:
            sequence: Snapshot number from the registry. A view numbered at
                or below the last one applied for the category is stale and
                leaves the published results untouched.

        Returns:
            The merged, filtered result list after the update.
        """
        with self._lock:
            if sequence is not None:
                if sequence <= self._sequences.get(category, 0):
                    logger.debug(f"Ignoring stale {category.value} snapshot #{sequence}")
                    return list(self._published)
                self._sequences[category] = sequence
            self._views[category] = tuple(entities)
            return self._republish()

    def refresh(self) -> list[ScanResult]:
        """Re-read every attached registry and republish."""
        with self._lock:
            for registry in self._registries:
                for category in DeviceCategory:
                    snapshot = registry.snapshot(category)
                    self._views[category] = snapshot.entities
                    self._sequences[category] = snapshot.sequence
            return self._republish()

    def set_min_severity(self, min_severity: float) -> list[ScanResult]:
        with self._lock:
            self._min_severity = min_severity
            logger.info(f"Minimum severity set to {min_severity}")
            return self._republish()

    def set_sink(self, sink: Optional[ResultSink]) -> None:
        with self._lock:
            self._sink = sink

    def results(self) -> list[ScanResult]:
        with self._lock:
            return list(self._published)

    def subscribe(self, callback: Callable[[list[ScanResult]], None]) -> Callable[[], None]:
        return self._channel.subscribe(callback)

    def unsubscribe(self, callback: Callable[[list[ScanResult]], None]) -> None:
        self._channel.unsubscribe(callback)

    def clear(self) -> None:
        """Forget every view and publish the now empty result set."""
        with self._lock:
            self._views.clear()
            self._sequences.clear()
            self._result_cache.clear()
            self._published = []
            self._accepted_signature = None
            self._republish()

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                'published': self._publish_count,
                'saved': self._save_count,
                'accepted': len(self._published),
                'min_severity': self._min_severity,
            }

    def _on_registry_update(self, update: CategoryUpdate) -> None:
        self.update(update.category, update.entities, update.sequence)

    def _republish(self) -> list[ScanResult]:
        merged = self._merge()
        accepted = [r for r in merged if r.severity_score >= self._min_severity]
        accepted.sort(key=lambda r: (-r.severity_score, r.identifier))

        self._published = accepted
        self._publish_count += 1
        self._channel.publish(list(accepted))

        signature = tuple(
            (r.identifier, r.severity_score, r.threat_level.value) for r in accepted
        )
        if signature != self._accepted_signature:
            self._accepted_signature = signature
            self._save(accepted)

        return list(accepted)

    def _merge(self) -> list[ScanResult]:
        """Map every view to scan results, keeping one result per identifier."""
        merged: dict[str, ScanResult] = {}
        for category, entities in self._views.items():
            for entity in entities:
                result = self._result_for(entity, category)
                existing = merged.get(entity.identifier)
                if existing is None or result.severity_score > existing.severity_score:
                    merged[entity.identifier] = result
        return list(merged.values())

    def _result_for(self, entity: TrackedEntity, category: DeviceCategory) -> ScanResult:
        cached = self._result_cache.get(entity.identifier)
        if cached is not None and cached.device is entity and cached.type == category:
            return cached
        result = ScanResult(device=entity, type=category)
        self._result_cache[entity.identifier] = result
        return result

    def _save(self, accepted: list[ScanResult]) -> None:
        if self._sink is None:
            return
        try:
            self._sink(list(accepted))
            self._save_count += 1
        except Exception as e:
            logger.error(f"Failed to forward {len(accepted)} results to sink: {e}")
