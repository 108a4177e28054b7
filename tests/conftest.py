"""
Shared fixtures for the TravelWatch test suite.
"""

from typing import Callable

import pytest

from travelwatch.config import get_settings
from travelwatch.ingest.models import GeoPoint, Transaction
from travelwatch.processor.emitter import FraudCandidateEmitter, InMemoryCandidateSink
from travelwatch.processor.join_engine import WindowedJoinEngine
from travelwatch.processor.window_buffer import KeyPartitionedWindowBuffer

# 2024-03-01T10:00:00Z
T0 = 1_709_287_200_000
SECOND = 1_000
MINUTE = 60 * SECOND
WINDOW_MS = 10 * MINUTE


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Every test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_tx() -> Callable[..., Transaction]:
    """Factory for transactions with sensible defaults."""

    def _make(
        transaction_id: str,
        event_time: int,
        lat: float = 37.55,
        lon: float = -121.98,
        account_id: str = "ac_03",
        amount: float = 100.0,
    ) -> Transaction:
        return Transaction(
            account_id=account_id,
            transaction_id=transaction_id,
            event_time=event_time,
            amount=amount,
            location=GeoPoint(lat=lat, lon=lon),
            source_label=f"ATM {transaction_id}",
        )

    return _make


@pytest.fixture
def buffer() -> KeyPartitionedWindowBuffer:
    return KeyPartitionedWindowBuffer(retention_ms=WINDOW_MS, max_per_key=100)


@pytest.fixture
def engine(buffer: KeyPartitionedWindowBuffer) -> WindowedJoinEngine:
    return WindowedJoinEngine(buffer, window_ms=WINDOW_MS)


@pytest.fixture
def sink() -> InMemoryCandidateSink:
    return InMemoryCandidateSink()


@pytest.fixture
def emitter(sink: InMemoryCandidateSink) -> FraudCandidateEmitter:
    return FraudCandidateEmitter(sink)
