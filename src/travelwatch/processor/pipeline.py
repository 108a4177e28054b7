# =============================================================================
# TravelWatch - Partition Pipeline
# =============================================================================
"""
Single-partition processing: normalize -> join -> enrich -> emit.

One FraudPipeline owns one window buffer. It is driven by exactly one
worker, so insert, scan, filter and evict for a key are serialized.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping

from loguru import logger

from travelwatch.config.settings import JoinSettings
from travelwatch.exceptions import MalformedEvent, PublishError
from travelwatch.ingest.normalizer import EventNormalizer
from travelwatch.processor.emitter import FraudCandidateEmitter
from travelwatch.processor.join_engine import WindowedJoinEngine
from travelwatch.processor.window_buffer import KeyPartitionedWindowBuffer


@dataclass
class PipelineStats:
    """Counters for one partition (or the sum over all of them)."""

    events_received: int = 0
    transactions_processed: int = 0
    malformed: int = 0
    late_drops: int = 0
    duplicate_drops: int = 0
    overflow_evictions: int = 0
    candidates_emitted: int = 0
    errors: int = 0

    def __add__(self, other: "PipelineStats") -> "PipelineStats":
        return PipelineStats(**{
            f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)
        })

    @property
    def candidate_rate(self) -> float:
        if self.transactions_processed == 0:
            return 0.0
        return self.candidates_emitted / self.transactions_processed


class FraudPipeline:
    """
    Processing chain for one key partition.

    Args:
        normalizer: Payload validator
        engine: Windowed join engine (owns the partition's buffer)
        emitter: Candidate publisher, may be shared across partitions
    """

    def __init__(
        self,
        normalizer: EventNormalizer,
        engine: WindowedJoinEngine,
        emitter: FraudCandidateEmitter,
    ) -> None:
        self.normalizer = normalizer
        self.engine = engine
        self.emitter = emitter
        self._stats = PipelineStats()

    def handle(
        self,
        raw: Mapping[str, Any] | bytes | str,
        arrival_time_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Process one raw event.

        Malformed events are logged and dropped. Each candidate is published
        in full or not at all.

        Returns:
            Output records published for this event
        """
        self._stats.events_received += 1

        try:
            if isinstance(raw, (bytes, str)):
                tx = self.normalizer.parse_json(raw, arrival_time_ms)
            else:
                tx = self.normalizer.normalize(raw, arrival_time_ms)
        except MalformedEvent as e:
            self._stats.malformed += 1
            logger.warning(f"Dropping event: {e}")
            return []

        candidates = self.engine.process(tx)
        self._stats.transactions_processed += 1

        records: list[dict[str, Any]] = []
        for candidate in candidates:
            try:
                records.append(self.emitter.emit(candidate))
            except PublishError as e:
                logger.error(f"Failed to emit {candidate.pair_key}: {e}")
                self._stats.errors += 1
                continue
            self._stats.candidates_emitted += 1

        return records

    def tick(self) -> int:
        """Periodic eviction over every key of this partition."""
        return self.engine.buffer.evict_all()

    @property
    def stats(self) -> PipelineStats:
        buffer = self.engine.buffer
        self._stats.late_drops = buffer.late_drops
        self._stats.duplicate_drops = buffer.duplicate_drops
        self._stats.overflow_evictions = buffer.overflow_evictions
        return PipelineStats(**{f.name: getattr(self._stats, f.name) for f in fields(self._stats)})


def build_pipeline(join: JoinSettings, emitter: FraudCandidateEmitter) -> FraudPipeline:
    """Create a pipeline with a fresh buffer configured from ``join``."""
    buffer = KeyPartitionedWindowBuffer(
        retention_ms=join.retention_ms,
        max_per_key=join.max_buffer_per_key,
        idle_ms=join.idle_key_ms,
    )
    return FraudPipeline(
        normalizer=EventNormalizer(join.allow_arrival_time_fallback),
        engine=WindowedJoinEngine(buffer, window_ms=join.window_ms),
        emitter=emitter,
    )
