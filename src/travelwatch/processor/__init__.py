"""
Processing module for the impossible travel engine.

This module contains:
- KeyPartitionedWindowBuffer: per-account event-time ordered state
- WindowedJoinEngine: forward/backward scanning pair join with filters
- enrich_pair / haversine_distance: distance and implied speed
- FraudCandidateEmitter + sinks: output publishing with account decoration
- AccountLookup: read-only account metadata (in-memory or Redis)
- FraudPipeline / PartitionedRunner: key-sharded execution
"""

from travelwatch.processor.account_lookup import (
    AccountLookup,
    InMemoryAccountLookup,
    RedisAccountLookup,
)
from travelwatch.processor.emitter import (
    CandidateSink,
    FraudCandidateEmitter,
    InMemoryCandidateSink,
    JsonLinesCandidateSink,
    KafkaCandidateSink,
)
from travelwatch.processor.geo import enrich_pair, haversine_distance
from travelwatch.processor.join_engine import FILTERS, WindowedJoinEngine, passes_filters
from travelwatch.processor.partitions import PartitionedRunner
from travelwatch.processor.pipeline import FraudPipeline, PipelineStats, build_pipeline
from travelwatch.processor.window_buffer import KeyPartitionedWindowBuffer

__all__ = [
    # Account Lookup
    "AccountLookup",
    "InMemoryAccountLookup",
    "RedisAccountLookup",
    # Emitter
    "CandidateSink",
    "FraudCandidateEmitter",
    "InMemoryCandidateSink",
    "JsonLinesCandidateSink",
    "KafkaCandidateSink",
    # Enrichment
    "enrich_pair",
    "haversine_distance",
    # Join
    "FILTERS",
    "WindowedJoinEngine",
    "passes_filters",
    # Execution
    "FraudPipeline",
    "PartitionedRunner",
    "PipelineStats",
    "build_pipeline",
    # Buffer
    "KeyPartitionedWindowBuffer",
]
