"""
FraudDetectorService tests

Kafka is never contacted: the service is driven through file replay and
direct message handling with an in-memory sink.
"""

import json
from unittest.mock import MagicMock

import pytest

from travelwatch.config.settings import JoinSettings
from travelwatch.ingest.models import Account
from travelwatch.processor.account_lookup import InMemoryAccountLookup
from travelwatch.processor.detector import (
    FraudDetectorService,
    build_join_settings,
    parse_args,
)


EVENTS = [
    {
        "account_id": "ac_03",
        "transaction_id": "04",
        "atm": "ATM : 8001 Mission Blvd",
        "location": {"lat": "37.55", "lon": "-121.98"},
        "amount": 20.0,
        "timestamp": "2024-03-01T10:00:00Z",
    },
    {
        "account_id": "ac_02",
        "transaction_id": "05",
        "atm": "ATM : 1 Main St",
        "location": {"lat": "38.40", "lon": "-121.50"},
        "amount": 60.0,
        "timestamp": "2024-03-01T10:01:00Z",
    },
    {
        "account_id": "ac_03",
        "transaction_id": "X05",
        "atm": "ATM : 9011 Olive Ave",
        "location": {"lat": "33.55", "lon": "-120.98"},
        "amount": 400.0,
        "timestamp": "2024-03-01T10:05:58Z",
    },
]


@pytest.fixture
def events_file(tmp_path):
    path = tmp_path / "events.jsonl"
    lines = [json.dumps(e) for e in EVENTS]
    lines.insert(1, "{broken")
    lines.append("")
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


class TestReplay:

    def test_replay_emits_candidate(self, events_file, sink) -> None:
        detector = FraudDetectorService(
            join=JoinSettings(partitions=2),
            sink=sink,
        )

        detector.replay(events_file)

        assert len(sink.records) == 1
        record = sink.records[0]
        assert record["first_transaction_id"] == "04"
        assert record["second_transaction_id"] == "X05"
        assert record["account_contact"] is None

        assert detector.stats.messages_consumed == 4
        assert detector.stats.invalid_messages == 1
        assert detector.runner.stats().transactions_processed == 3
        assert not detector.runner.is_running

    def test_replay_with_account_lookup(self, events_file, sink) -> None:
        lookup = InMemoryAccountLookup([Account(account_id="ac_03", name="Jane Roe")])
        detector = FraudDetectorService(join=JoinSettings(partitions=1), sink=sink, lookup=lookup)

        detector.replay(events_file)

        assert sink.records[0]["account_contact"]["name"] == "Jane Roe"


class TestMessageHandling:

    def test_non_object_payload(self, sink) -> None:
        detector = FraudDetectorService(sink=sink)
        detector._runner = MagicMock()

        assert not detector._handle_message(b"[1, 2]")
        assert detector.stats.invalid_messages == 1
        detector._runner.submit.assert_not_called()

    def test_arrival_time_is_stamped(self, sink) -> None:
        detector = FraudDetectorService(sink=sink)
        detector._runner = MagicMock()

        assert detector._handle_message(json.dumps(EVENTS[0]), arrival_time_ms=42)

        detector._runner.submit.assert_called_once_with(EVENTS[0], 42)


class TestCli:

    def test_defaults(self) -> None:
        args = parse_args([])

        assert args.input_file is None
        assert args.window_seconds is None
        assert not args.no_dashboard

    def test_window_override_widens_retention(self) -> None:
        args = parse_args(["--window-seconds", "900", "--partitions", "2"])

        join = build_join_settings(args, JoinSettings())

        assert join.window_seconds == 900
        assert join.retention_seconds == 900
        assert join.partitions == 2

    def test_explicit_retention_is_validated(self) -> None:
        args = parse_args(["-w", "900", "-r", "60"])

        with pytest.raises(ValueError):
            build_join_settings(args, JoinSettings())
