# =============================================================================
# TravelWatch - Key-Partitioned Window Buffer
# =============================================================================
"""
Per-account, event-time ordered buffer of recent transactions.

Each account has its own bucket, kept sorted by ``event_time``, and its own
watermark: the maximum event time seen for that account. A transaction stays
matchable while ``event_time >= watermark - retention``.

    account ac_03:  watermark = 10:05:58, retention = 10 min
        [09:58:12 tx01] [10:00:00 tx04] [10:05:58 X05]
         ^ evicted once the watermark passes 10:08:12

Memory is bounded by (active accounts) x (transactions per account per
retention horizon). When a watermark stalls the per-key hard cap takes over
and the oldest entries are dropped with a BufferOverflow warning.

An account that receives nothing for ``idle_ms`` of wall-clock time is
forgotten entirely (bucket, ids and watermark) on the next ``evict_all``.
A bucket always holds its own newest entry, so only idleness releases an
account.

The buffer is not thread-safe. Each partition worker owns its own instance.
"""

from __future__ import annotations

import time
from bisect import bisect_left, bisect_right, insort
from typing import Callable, Iterator

from loguru import logger

from travelwatch.exceptions import BufferOverflow, InvalidConfigurationError
from travelwatch.ingest.models import Transaction


def _event_time(tx: Transaction) -> int:
    return tx.event_time


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class KeyPartitionedWindowBuffer:
    """
    Ordered per-key storage with watermark-driven eviction.

    Args:
        retention_ms: Retention horizon R in milliseconds
        max_per_key: Hard cap on buffered transactions for one account
        on_overflow: Optional callback receiving each BufferOverflow warning
        idle_ms: Wall-clock inactivity after which an account is forgotten
            (default: ``retention_ms``)
        clock: Millisecond clock used for idleness (default: monotonic)
    """

    def __init__(
        self,
        retention_ms: int,
        max_per_key: int = 1000,
        on_overflow: Callable[[BufferOverflow], None] | None = None,
        idle_ms: int | None = None,
        clock: Callable[[], int] = _monotonic_ms,
    ) -> None:
        if retention_ms <= 0:
            raise InvalidConfigurationError(f"retention_ms must be positive, got {retention_ms}")
        if max_per_key < 1:
            raise InvalidConfigurationError(f"max_per_key must be >= 1, got {max_per_key}")
        if idle_ms is not None and idle_ms <= 0:
            raise InvalidConfigurationError(f"idle_ms must be positive, got {idle_ms}")

        self.retention_ms = retention_ms
        self.max_per_key = max_per_key
        self.idle_ms = retention_ms if idle_ms is None else idle_ms
        self._on_overflow = on_overflow
        self._clock = clock

        self._buckets: dict[str, list[Transaction]] = {}
        self._ids: dict[str, set[str]] = {}
        self._watermarks: dict[str, int] = {}
        self._last_seen: dict[str, int] = {}

        # Counters
        self.late_drops = 0
        self.duplicate_drops = 0
        self.overflow_evictions = 0
        self.idle_keys_pruned = 0

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in list(self._buckets.values()))

    def keys(self) -> Iterator[str]:
        return iter(list(self._buckets))

    def tracked_keys(self) -> int:
        """Accounts with any state held, including a bare watermark."""
        return len(self._watermarks)

    def size(self, account_id: str) -> int:
        return len(self._buckets.get(account_id, ()))

    def watermark(self, account_id: str) -> int | None:
        """Maximum event time seen for the account, or None if never seen."""
        return self._watermarks.get(account_id)

    # =========================================================================
    # Insert / Evict
    # =========================================================================

    def insert(self, tx: Transaction) -> bool:
        """
        Insert a transaction into its account's bucket.

        Late events (older than ``watermark - retention``) and redeliveries of
        an already buffered ``transaction_id`` are dropped.

        Returns:
            True if ``tx`` is buffered after the call, False if it was dropped
        """
        key = tx.account_id
        watermark = max(self._watermarks.get(key, tx.event_time), tx.event_time)

        if tx.event_time < watermark - self.retention_ms:
            self.late_drops += 1
            logger.debug(
                f"Late event dropped: {tx.transaction_id} for {key} "
                f"({watermark - tx.event_time} ms behind watermark)"
            )
            return False

        self._watermarks[key] = watermark
        self._last_seen[key] = self._clock()

        ids = self._ids.setdefault(key, set())
        if tx.transaction_id in ids:
            self.duplicate_drops += 1
            logger.debug(f"Duplicate delivery ignored: {tx.transaction_id} for {key}")
            return False

        bucket = self._buckets.setdefault(key, [])
        insort(bucket, tx, key=_event_time)
        ids.add(tx.transaction_id)

        self.evict(key)
        self._enforce_cap(key)

        return tx.transaction_id in self._ids.get(key, ())

    def evict(self, account_id: str, watermark: int | None = None) -> int:
        """
        Remove every entry with ``event_time < watermark - retention``.

        Args:
            account_id: Bucket to evict from
            watermark: Reference watermark (default: the account's own)

        Returns:
            Number of transactions removed
        """
        if watermark is None:
            watermark = self._watermarks.get(account_id)
        bucket = self._buckets.get(account_id)
        if watermark is None or not bucket:
            return 0

        cutoff = watermark - self.retention_ms
        idx = bisect_left(bucket, cutoff, key=_event_time)
        if idx:
            self._drop_oldest(account_id, idx)
        return idx

    def evict_all(self) -> int:
        """
        Periodic tick: evict every bucket against its own watermark, then
        forget accounts idle for longer than ``idle_ms``.

        Returns:
            Number of transactions removed
        """
        removed = sum(self.evict(key) for key in self.keys())
        return removed + self._prune_idle()

    def _prune_idle(self) -> int:
        cutoff = self._clock() - self.idle_ms
        idle = [key for key, seen in self._last_seen.items() if seen < cutoff]

        removed = 0
        for key in idle:
            removed += len(self._buckets.pop(key, ()))
            self._ids.pop(key, None)
            self._watermarks.pop(key, None)
            del self._last_seen[key]

        if idle:
            self.idle_keys_pruned += len(idle)
            logger.debug(f"Forgot {len(idle)} idle account(s), {removed} transaction(s) released")
        return removed

    def _enforce_cap(self, account_id: str) -> None:
        bucket = self._buckets.get(account_id)
        if not bucket or len(bucket) <= self.max_per_key:
            return

        dropped = len(bucket) - self.max_per_key
        self._drop_oldest(account_id, dropped)
        self.overflow_evictions += dropped

        warning = BufferOverflow(account_id, dropped, self.max_per_key)
        logger.warning(str(warning))
        if self._on_overflow is not None:
            self._on_overflow(warning)

    def _drop_oldest(self, account_id: str, count: int) -> None:
        bucket = self._buckets[account_id]
        ids = self._ids[account_id]
        for tx in bucket[:count]:
            ids.discard(tx.transaction_id)
        del bucket[:count]

        # Watermark is kept so late events for this key are still rejected
        # until the account goes idle
        if not bucket:
            del self._buckets[account_id]
            del self._ids[account_id]

    # =========================================================================
    # Scan
    # =========================================================================

    def scan_window(
        self,
        account_id: str,
        center_time: int,
        before: int,
        after: int,
    ) -> list[Transaction]:
        """
        Return buffered transactions with event time in
        ``[center_time - before, center_time + after]``, oldest first.

        Nothing older than ``watermark - retention`` is ever returned, even if
        it has not been physically evicted yet.
        """
        bucket = self._buckets.get(account_id)
        if not bucket:
            return []

        low = center_time - before
        high = center_time + after
        watermark = self._watermarks.get(account_id)
        if watermark is not None:
            low = max(low, watermark - self.retention_ms)
        if low > high:
            return []

        start = bisect_left(bucket, low, key=_event_time)
        end = bisect_right(bucket, high, key=_event_time)
        return bucket[start:end]
