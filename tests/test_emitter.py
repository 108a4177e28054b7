"""
FraudCandidateEmitter and sink tests
"""

import io
import json
import threading
from unittest.mock import MagicMock

import pytest

from travelwatch.exceptions import AccountLookupError, PublishError
from travelwatch.ingest.models import Account
from travelwatch.processor.account_lookup import AccountLookup, InMemoryAccountLookup
from travelwatch.processor.emitter import (
    FraudCandidateEmitter,
    InMemoryCandidateSink,
    JsonLinesCandidateSink,
    KafkaCandidateSink,
)
from travelwatch.processor.geo import enrich_pair

from tests.conftest import SECOND, T0

OUTPUT_FIELDS = {
    "account_id",
    "first_transaction_id",
    "second_transaction_id",
    "first_event_time",
    "second_event_time",
    "distance_km",
    "time_delta_ms",
    "implied_speed_kmh",
    "first_location",
    "second_location",
    "first_source_label",
    "second_source_label",
    "account_contact",
}


@pytest.fixture
def candidate(make_tx):
    return enrich_pair(
        make_tx("04", T0, 37.55, -121.98),
        make_tx("X05", T0 + 358 * SECOND, 33.55, -120.98),
    )


class FailingLookup(AccountLookup):
    def get(self, account_id):
        raise AccountLookupError("backend down")


class BrokenLookup(AccountLookup):
    def get(self, account_id):
        raise KeyError("contact")


class BlockingLookup(AccountLookup):
    def __init__(self) -> None:
        self.release = threading.Event()

    def get(self, account_id):
        self.release.wait(timeout=5)
        return Account(account_id=account_id, name="Too Late"), True


class TestEmit:

    def test_publishes_once_without_lookup(self, candidate, sink, emitter) -> None:
        record = emitter.emit(candidate)

        assert sink.records == [record]
        assert set(record) == OUTPUT_FIELDS
        assert record["account_contact"] is None
        assert emitter.emitted == 1

    def test_attaches_account_contact(self, candidate, sink) -> None:
        lookup = InMemoryAccountLookup([
            Account(account_id="ac_03", name="Jane Roe", email="jane@example.com"),
        ])
        emitter = FraudCandidateEmitter(sink, lookup=lookup)

        record = emitter.emit(candidate)

        assert record["account_contact"] == {
            "name": "Jane Roe",
            "email": "jane@example.com",
            "phone": None,
            "address": None,
        }
        emitter.close()

    def test_missing_account_still_publishes(self, candidate, sink) -> None:
        emitter = FraudCandidateEmitter(sink, lookup=InMemoryAccountLookup())

        record = emitter.emit(candidate)

        assert record["account_contact"] is None
        assert len(sink.records) == 1
        assert emitter.lookup_misses == 1
        emitter.close()

    def test_lookup_error_still_publishes(self, candidate, sink) -> None:
        emitter = FraudCandidateEmitter(sink, lookup=FailingLookup())

        record = emitter.emit(candidate)

        assert record["account_contact"] is None
        assert emitter.lookup_failures == 1
        emitter.close()

    def test_unexpected_lookup_error_still_publishes(self, candidate, sink) -> None:
        emitter = FraudCandidateEmitter(sink, lookup=BrokenLookup())

        record = emitter.emit(candidate)

        assert record["account_contact"] is None
        assert emitter.lookup_failures == 1
        assert sink.records == [record]
        emitter.close()

    def test_lookup_timeout_still_publishes(self, candidate, sink) -> None:
        lookup = BlockingLookup()
        emitter = FraudCandidateEmitter(sink, lookup=lookup, lookup_timeout=0.05)

        try:
            record = emitter.emit(candidate)
        finally:
            lookup.release.set()
            emitter.close()

        assert record["account_contact"] is None
        assert emitter.lookup_failures == 1
        assert len(sink.records) == 1

    def test_sink_failure_propagates(self, candidate) -> None:
        sink = MagicMock()
        sink.publish.side_effect = PublishError("down")
        emitter = FraudCandidateEmitter(sink)

        with pytest.raises(PublishError):
            emitter.emit(candidate)

        assert emitter.emitted == 0


class TestKafkaCandidateSink:

    @pytest.fixture
    def producer(self) -> MagicMock:
        producer = MagicMock()
        producer.flush.return_value = 0
        return producer

    def test_publish_keys_by_pair(self, candidate, producer) -> None:
        sink = KafkaCandidateSink("localhost:9092", "fraud_candidates", producer=producer)

        sink.publish(candidate.to_output_dict())

        kwargs = producer.produce.call_args.kwargs
        assert kwargs["topic"] == "fraud_candidates"
        assert kwargs["key"] == b"04:X05"
        assert json.loads(kwargs["value"])["second_transaction_id"] == "X05"
        producer.poll.assert_called_once_with(0)
        assert sink.stats["sent"] == 1

    def test_delivery_callback_counts(self, candidate, producer) -> None:
        sink = KafkaCandidateSink("localhost:9092", "fraud_candidates", producer=producer)
        sink.publish(candidate.to_output_dict())
        callback = producer.produce.call_args.kwargs["callback"]

        callback(None, MagicMock())
        callback("broker gone", None)

        assert sink.stats["delivered"] == 1
        assert sink.stats["failed"] == 1

    def test_full_queue_raises_publish_error(self, candidate, producer) -> None:
        producer.produce.side_effect = BufferError("Local: Queue full")
        sink = KafkaCandidateSink("localhost:9092", "fraud_candidates", producer=producer)

        with pytest.raises(PublishError) as exc_info:
            sink.publish(candidate.to_output_dict())

        assert isinstance(exc_info.value.__cause__, BufferError)
        assert sink.stats["failed"] == 1

    def test_counters_from_many_threads(self, candidate, producer) -> None:
        sink = KafkaCandidateSink("localhost:9092", "fraud_candidates", producer=producer)
        record = candidate.to_output_dict()

        def publish_many() -> None:
            for _ in range(500):
                sink.publish(record)

        threads = [threading.Thread(target=publish_many) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sink.stats["sent"] == 4000

    def test_stats_is_a_snapshot(self, candidate, producer) -> None:
        sink = KafkaCandidateSink("localhost:9092", "fraud_candidates", producer=producer)
        snapshot = sink.stats

        sink.publish(candidate.to_output_dict())

        assert snapshot["sent"] == 0
        assert sink.stats["sent"] == 1

    def test_close_flushes(self, producer) -> None:
        sink = KafkaCandidateSink("localhost:9092", "fraud_candidates", producer=producer)

        sink.close()

        producer.flush.assert_called_once()


class TestLocalSinks:

    def test_json_lines(self, candidate) -> None:
        stream = io.StringIO()
        sink = JsonLinesCandidateSink(stream)

        sink.publish(candidate.to_output_dict())
        sink.publish(candidate.to_output_dict())
        sink.flush()

        lines = stream.getvalue().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["first_transaction_id"] == "04"

    def test_json_lines_closed_stream(self, candidate) -> None:
        stream = io.StringIO()
        stream.close()
        sink = JsonLinesCandidateSink(stream)

        with pytest.raises(PublishError) as exc_info:
            sink.publish(candidate.to_output_dict())

        assert "04:X05" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_in_memory_returns_copy(self) -> None:
        sink = InMemoryCandidateSink()
        sink.publish({"a": 1})

        sink.records.clear()

        assert sink.records == [{"a": 1}]
