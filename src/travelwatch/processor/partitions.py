# =============================================================================
# TravelWatch - Key-Sharded Workers
# =============================================================================
"""
Parallel execution of partition pipelines.

All engine state is partitioned by ``account_id``. Each partition has one
worker thread and one bounded queue, and every event for a given account is
routed to the same partition, so no cross-partition coordination is needed:

    submit(event) --crc32(account_id) % N--> queue[i] --> worker[i] --> pipeline[i]

A blocked account lookup stalls only its own partition. On shutdown each
worker finishes the event it is processing, never starts another one, and
exits.
"""

from __future__ import annotations

import queue
import threading
import zlib
from functools import reduce
from typing import Any, Callable, Mapping

from loguru import logger

from travelwatch.exceptions import InvalidConfigurationError
from travelwatch.processor.pipeline import FraudPipeline, PipelineStats

_STOP = object()


class PartitionedRunner:
    """
    Runs one FraudPipeline per partition on its own thread.

    Args:
        num_partitions: Number of partitions / worker threads
        pipeline_factory: Builds the pipeline for a partition index
        queue_size: Per-partition queue bound (submit blocks when full)
        tick_interval: Idle seconds before a worker runs periodic eviction
    """

    def __init__(
        self,
        num_partitions: int,
        pipeline_factory: Callable[[int], FraudPipeline],
        queue_size: int = 10_000,
        tick_interval: float = 1.0,
    ) -> None:
        if num_partitions < 1:
            raise InvalidConfigurationError(f"num_partitions must be >= 1, got {num_partitions}")

        self.num_partitions = num_partitions
        self.tick_interval = tick_interval
        self.pipelines = [pipeline_factory(i) for i in range(num_partitions)]

        self._queues: list[queue.Queue] = [queue.Queue(maxsize=queue_size) for _ in range(num_partitions)]
        self._threads: list[threading.Thread] = []
        self._errors = [0] * num_partitions
        self._stopping = threading.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def partition_for(self, account_id: str) -> int:
        """Stable partition index for an account key."""
        return zlib.crc32(account_id.encode("utf-8")) % self.num_partitions

    def start(self) -> None:
        if self._running:
            raise RuntimeError("PartitionedRunner is already running")

        self._stopping.clear()
        self._threads = [
            threading.Thread(
                target=self._worker,
                args=(i,),
                name=f"partition-{i}",
                daemon=True,
            )
            for i in range(self.num_partitions)
        ]
        for thread in self._threads:
            thread.start()

        self._running = True
        logger.info(f"Started {self.num_partitions} partition worker(s)")

    def submit(self, raw: Mapping[str, Any], arrival_time_ms: int | None = None) -> int:
        """
        Queue a decoded event on its account's partition.

        Surrounding whitespace in ``account_id`` is ignored, as it is by the
        normalizer. Events without a usable ``account_id`` go to partition 0,
        where the normalizer rejects them.

        Returns:
            The partition index the event was routed to
        """
        if not self._running:
            raise RuntimeError("PartitionedRunner is not running")

        # Route on the key the normalizer will store
        account_id = raw.get("account_id")
        if isinstance(account_id, str) and account_id.strip():
            partition = self.partition_for(account_id.strip())
        else:
            partition = 0
        self._queues[partition].put((raw, arrival_time_ms))
        return partition

    def drain(self) -> None:
        """Block until every queued event has been processed."""
        for q in self._queues:
            q.join()

    def shutdown(self, timeout: float = 10.0) -> None:
        """
        Stop all workers after their current event.

        Events still waiting in the queues are not processed. Idempotent.
        """
        if not self._running:
            return

        logger.info("Stopping partition workers...")
        self._stopping.set()
        for q in self._queues:
            try:
                q.put_nowait(_STOP)
            except queue.Full:
                # The worker checks the stop flag before its next event
                pass

        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not stop within {timeout}s")

        self._running = False
        logger.info("Partition workers stopped")

    def stats(self) -> PipelineStats:
        """Stats summed over all partitions."""
        total = reduce(lambda a, b: a + b, (p.stats for p in self.pipelines), PipelineStats())
        total.errors += sum(self._errors)
        return total

    def buffered(self) -> int:
        """Transactions currently held across all window buffers."""
        return sum(len(p.engine.buffer) for p in self.pipelines)

    def _worker(self, index: int) -> None:
        pipeline = self.pipelines[index]
        q = self._queues[index]

        while True:
            try:
                item = q.get(timeout=self.tick_interval)
            except queue.Empty:
                if self._stopping.is_set():
                    break
                pipeline.tick()
                continue

            try:
                if item is _STOP or self._stopping.is_set():
                    break

                raw, arrival_time_ms = item
                try:
                    pipeline.handle(raw, arrival_time_ms)
                except Exception as e:
                    logger.exception(f"Partition {index} processing error: {e}")
                    self._errors[index] += 1
            finally:
                q.task_done()

        logger.debug(f"Partition {index} worker exited")
