# =============================================================================
# TravelWatch - Fraud Candidate Emitter
# =============================================================================
"""
Publishing of fraud candidates to an output sink.

The emitter optionally decorates each candidate with account contact data
from the external account lookup. The lookup runs with a bounded timeout,
and a miss, timeout or backend error never drops the candidate. It is
published with ``account_contact: null`` instead.

Sinks:
    - KafkaCandidateSink:     confluent-kafka producer, keyed by pair identity
    - JsonLinesCandidateSink: one JSON object per line on a text stream
    - InMemoryCandidateSink:  list-backed, for tests and replays
"""

from __future__ import annotations

import json
import sys
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, TextIO

from confluent_kafka import KafkaError, KafkaException, Producer
from loguru import logger

from travelwatch.exceptions import (
    AccountLookupError,
    AccountLookupTimeout,
    AccountNotFound,
    PublishError,
)
from travelwatch.ingest.models import FraudCandidate
from travelwatch.processor.account_lookup import AccountLookup


# =============================================================================
# Sinks
# =============================================================================

class CandidateSink(ABC):
    """Push-style output for fraud candidate records."""

    @abstractmethod
    def publish(self, record: dict[str, Any]) -> None:
        """
        Publish one output record.

        Raises:
            PublishError: If the record could not be handed to the sink
        """

    def flush(self, timeout: float = 10.0) -> int:
        """Wait for pending records; returns how many are still pending."""
        return 0

    def close(self) -> None:
        """Flush and release resources."""
        self.flush()


class InMemoryCandidateSink(CandidateSink):
    """Collects records in a list."""

    def __init__(self) -> None:
        self._records: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def publish(self, record: dict[str, Any]) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._records)


class JsonLinesCandidateSink(CandidateSink):
    """Writes each record as one JSON line (stdout by default)."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._lock = threading.Lock()

    def publish(self, record: dict[str, Any]) -> None:
        line = json.dumps(record, sort_keys=True)
        try:
            with self._lock:
                self._stream.write(line + "\n")
        except (OSError, ValueError) as e:
            key = f"{record['first_transaction_id']}:{record['second_transaction_id']}"
            raise PublishError(f"Failed to write candidate {key}", cause=e) from e

    def flush(self, timeout: float = 10.0) -> int:
        with self._lock:
            self._stream.flush()
        return 0


class KafkaCandidateSink(CandidateSink):
    """
    Kafka producer for fraud candidates.

    Messages are keyed by ``first_id:second_id`` so that at-least-once
    redelivery can be deduplicated downstream.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        client_id: str = "travelwatch-detector",
        producer: Producer | None = None,
    ) -> None:
        self.topic = topic
        self._lock = threading.Lock()
        self._stats = {
            "sent": 0,
            "delivered": 0,
            "failed": 0,
        }

        # Producer configuration
        config = {
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "acks": "all",
            "retries": 3,
            "linger.ms": 5,
            "compression.type": "snappy",
        }

        self._producer = producer if producer is not None else Producer(config)
        logger.info(f"Kafka producer ready for: {self.topic}")

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def _count(self, name: str) -> None:
        # Shared by every partition worker and the delivery callback
        with self._lock:
            self._stats[name] += 1

    def _delivery_callback(self, err: KafkaError | None, msg: Any) -> None:
        """Handle delivery confirmation from Kafka."""
        if err is not None:
            logger.error(f"Candidate delivery failed: {err}")
            self._count("failed")
        else:
            self._count("delivered")

    def publish(self, record: dict[str, Any]) -> None:
        key = f"{record['first_transaction_id']}:{record['second_transaction_id']}"
        try:
            self._producer.produce(
                topic=self.topic,
                key=key.encode("utf-8"),
                value=json.dumps(record).encode("utf-8"),
                callback=self._delivery_callback,
            )
            # Trigger delivery callbacks
            self._producer.poll(0)
        except (KafkaException, BufferError) as e:
            self._count("failed")
            raise PublishError(f"Failed to publish candidate {key} to {self.topic}", cause=e) from e

        self._count("sent")

    def flush(self, timeout: float = 10.0) -> int:
        return self._producer.flush(timeout)

    def close(self) -> None:
        remaining = self.flush()
        if remaining:
            logger.warning(f"{remaining} candidate(s) still undelivered at close")
        logger.info(f"Candidate producer closed. Stats: {self.stats}")


# =============================================================================
# Emitter
# =============================================================================

class FraudCandidateEmitter:
    """
    Decorates and publishes fraud candidates, one publish call per candidate.

    Args:
        sink: Output sink
        lookup: Optional account lookup for contact metadata
        lookup_timeout: Seconds to wait for one lookup
        executor: Pool running lookups; one is created when omitted
    """

    def __init__(
        self,
        sink: CandidateSink,
        lookup: AccountLookup | None = None,
        lookup_timeout: float = 0.5,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.sink = sink
        self.lookup = lookup
        self.lookup_timeout = lookup_timeout

        self._owns_executor = executor is None and lookup is not None
        self._executor = executor
        if self._owns_executor:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="account-lookup")

        self.emitted = 0
        self.lookup_misses = 0
        self.lookup_failures = 0

    def emit(self, candidate: FraudCandidate) -> dict[str, Any]:
        """
        Publish a candidate, with account contact attached when available.

        Returns:
            The published output record

        Raises:
            PublishError: If the sink rejected the record
        """
        contact = self._resolve_contact(candidate.account_id)
        record = candidate.to_output_dict(contact)

        self.sink.publish(record)
        self.emitted += 1

        logger.info(
            f"Fraud candidate {candidate.pair_key} on {candidate.account_id}: "
            f"{candidate.distance_km:.1f} km in {candidate.time_delta_ms / 60_000:.1f} min "
            f"= {candidate.implied_speed_kmh:.0f} km/h"
        )
        return record

    def _resolve_contact(self, account_id: str) -> dict[str, Any] | None:
        if self.lookup is None:
            return None

        future = self._executor.submit(self.lookup.get, account_id)
        try:
            account, found = future.result(timeout=self.lookup_timeout)
        except FuturesTimeoutError as e:
            future.cancel()
            self.lookup_failures += 1
            logger.warning(str(AccountLookupTimeout(account_id, self.lookup_timeout, cause=e)))
            return None
        except AccountLookupError as e:
            self.lookup_failures += 1
            logger.warning(f"Account lookup failed, emitting without contact: {e}")
            return None
        except Exception as e:
            self.lookup_failures += 1
            logger.exception(
                f"Unexpected account lookup error for {account_id}, emitting without contact: {e}"
            )
            return None

        if not found or account is None:
            self.lookup_misses += 1
            logger.warning(str(AccountNotFound(account_id)))
            return None

        return account.contact_dict()

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
