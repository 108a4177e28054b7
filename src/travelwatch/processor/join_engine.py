# =============================================================================
# TravelWatch - Windowed Join Engine
# =============================================================================
"""
Event-time self-join of an account's transactions within a window W.

For every newly arrived transaction ``t`` the engine:

1. inserts ``t`` into the account's window buffer;
2. scans forward, ``[t, t + W]``, pairing ``t`` (first) with any buffered
   later transaction (only non-empty when ``t`` arrived out of order);
3. scans backward, ``[t - W, t)``, pairing every buffered earlier
   transaction (first) with ``t`` (second);
4. runs the identity, location and zero-delta filters on each pair;
5. enriches the survivors into fraud candidates.

A pair is produced exactly once, by whichever member arrives second, and
always in (earlier, later) order. Pairs are never mirrored: the scan is
asymmetric around ``t`` and is not a symmetric window.

Example:
    buffer = KeyPartitionedWindowBuffer(retention_ms=600_000)
    engine = WindowedJoinEngine(buffer, window_ms=600_000)

    for tx in transactions:
        for candidate in engine.process(tx):
            emitter.emit(candidate)
"""

from __future__ import annotations

from collections import Counter
from typing import Callable

from loguru import logger

from travelwatch.exceptions import InvalidConfigurationError
from travelwatch.ingest.models import FraudCandidate, Transaction
from travelwatch.processor.geo import enrich_pair
from travelwatch.processor.window_buffer import KeyPartitionedWindowBuffer


# =============================================================================
# Pair Filters
# =============================================================================

PairPredicate = Callable[[Transaction, Transaction], bool]


def is_same_transaction(first: Transaction, second: Transaction) -> bool:
    return first.transaction_id == second.transaction_id


def is_same_location(first: Transaction, second: Transaction) -> bool:
    # Exact coordinate equality: repeat use of one terminal is not suspicious
    return first.location == second.location


def is_zero_delta(first: Transaction, second: Transaction) -> bool:
    return first.event_time == second.event_time


# Applied in order, first match rejects the pair
FILTERS: tuple[tuple[str, PairPredicate], ...] = (
    ("identity", is_same_transaction),
    ("location", is_same_location),
    ("zero_delta", is_zero_delta),
)


def passes_filters(first: Transaction, second: Transaction) -> str | None:
    """
    Run the pair filters.

    Returns:
        Name of the first filter that rejects the pair, or None if it passes
    """
    for name, rejects in FILTERS:
        if rejects(first, second):
            return name
    return None


# =============================================================================
# Join Engine
# =============================================================================

class WindowedJoinEngine:
    """
    Forward/backward scanning join over a key-partitioned window buffer.

    Args:
        buffer: The partition's window buffer (retention R >= window W)
        window_ms: Join window W in milliseconds

    Attributes:
        rejections: Count of discarded pairs per filter name
        pairs_matched: Pairs found by the scans before filtering
    """

    def __init__(self, buffer: KeyPartitionedWindowBuffer, window_ms: int) -> None:
        if window_ms <= 0:
            raise InvalidConfigurationError(f"window_ms must be positive, got {window_ms}")
        if buffer.retention_ms < window_ms:
            raise InvalidConfigurationError(
                f"Retention horizon ({buffer.retention_ms} ms) must be >= "
                f"join window ({window_ms} ms)"
            )

        self.buffer = buffer
        self.window_ms = window_ms
        self.rejections: Counter[str] = Counter()
        self.pairs_matched = 0

    def process(self, tx: Transaction) -> list[FraudCandidate]:
        """
        Insert ``tx`` and return the fraud candidates it completes.

        Candidates are ordered by the later member's event time.
        """
        if not self.buffer.insert(tx):
            return []

        candidates: list[FraudCandidate] = []
        for first, second in self._match(tx):
            self.pairs_matched += 1

            rejected_by = passes_filters(first, second)
            if rejected_by is not None:
                self.rejections[rejected_by] += 1
                continue

            candidates.append(enrich_pair(first, second))

        candidates.sort(key=lambda c: (c.second.event_time, c.first.event_time))

        if candidates:
            logger.debug(
                f"{tx.account_id}: {tx.transaction_id} completed {len(candidates)} candidate pair(s)"
            )
        return candidates

    def _match(self, tx: Transaction) -> list[tuple[Transaction, Transaction]]:
        key = tx.account_id
        t = tx.event_time

        # Look-ahead: tx is the earlier member; includes tx itself
        forward = self.buffer.scan_window(key, t, before=0, after=self.window_ms)
        pairs = [(tx, later) for later in forward]

        # Look-behind: tx is the later member
        backward = self.buffer.scan_window(key, t, before=self.window_ms, after=0)
        pairs.extend((earlier, tx) for earlier in backward if earlier.event_time < t)

        return pairs
