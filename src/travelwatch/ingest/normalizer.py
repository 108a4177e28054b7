# =============================================================================
# TravelWatch - Event Normalizer
# =============================================================================
"""
Validation and type conversion of raw transaction payloads.

Raw events arrive as JSON objects such as::

    {
        "account_id": "ac_03",
        "transaction_id": "X05",
        "atm": "ATM : 9011 Olive Ave",
        "location": {"lat": "33.55", "lon": "-120.98"},
        "amount": 120.0,
        "timestamp": "2024-03-01T10:05:58Z"
    }

The normalizer turns them into immutable :class:`Transaction` records or
raises :class:`MalformedEvent` naming the offending field. It has no side
effects.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError

from travelwatch.exceptions import MalformedEvent
from travelwatch.ingest.models import Transaction

_MISSING = object()


def parse_iso_timestamp(value: str) -> int:
    """
    Convert an ISO-8601 string to milliseconds since epoch.

    A trailing ``Z`` is accepted and naive datetimes are taken as UTC.

    Raises:
        ValueError: If the string is not a valid ISO-8601 datetime
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class EventNormalizer:
    """
    Turns raw payloads into canonical transactions.

    Args:
        allow_arrival_time_fallback: When True, events without ``event_time``
            or ``timestamp`` take the arrival time supplied by the transport
            boundary. This is a per-deployment switch, not a per-event one.
    """

    def __init__(self, allow_arrival_time_fallback: bool = True) -> None:
        self.allow_arrival_time_fallback = allow_arrival_time_fallback

    def parse_json(self, payload: bytes | str, arrival_time_ms: int | None = None) -> Transaction:
        """Decode one JSON object and normalize it."""
        try:
            raw = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEvent("<payload>", "is not valid JSON", cause=e) from e

        if not isinstance(raw, dict):
            raise MalformedEvent("<payload>", "must be a JSON object")

        return self.normalize(raw, arrival_time_ms)

    def normalize(self, raw: Mapping[str, Any], arrival_time_ms: int | None = None) -> Transaction:
        """
        Validate a raw event and build a :class:`Transaction`.

        Args:
            raw: Decoded event payload
            arrival_time_ms: When the transport saw the event (epoch ms)

        Returns:
            The canonical transaction

        Raises:
            MalformedEvent: If a required field is missing or invalid
        """
        transaction_id = self._require(raw, "transaction_id")
        if isinstance(transaction_id, int) and not isinstance(transaction_id, bool):
            transaction_id = str(transaction_id)

        lat, lon = self._extract_location(raw)

        data = {
            "account_id": self._require(raw, "account_id"),
            "transaction_id": transaction_id,
            "event_time": self._extract_event_time(raw, arrival_time_ms),
            "amount": self._require(raw, "amount"),
            "location": {"lat": lat, "lon": lon},
            "source_label": raw.get("source_label") or raw.get("atm") or "",
        }

        try:
            return Transaction.model_validate(data)
        except ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or "<payload>"
            raise MalformedEvent(field, error["msg"].lower(), cause=e) from e

    # =========================================================================
    # Field Extraction
    # =========================================================================

    @staticmethod
    def _require(raw: Mapping[str, Any], key: str) -> Any:
        value = raw.get(key, _MISSING)
        if value is _MISSING or value is None or value == "":
            raise MalformedEvent(key, "is missing")
        return value

    def _extract_location(self, raw: Mapping[str, Any]) -> tuple[Any, Any]:
        location = raw.get("location", _MISSING)

        if location is _MISSING or location is None:
            # Flattened form: {"location.lat": .., "location.lon": ..}
            return self._require(raw, "location.lat"), self._require(raw, "location.lon")

        if not isinstance(location, Mapping):
            raise MalformedEvent("location", "must be an object with lat and lon")

        lat = location.get("lat")
        lon = location.get("lon")
        if lat is None or lat == "":
            raise MalformedEvent("location.lat", "is missing")
        if lon is None or lon == "":
            raise MalformedEvent("location.lon", "is missing")
        return lat, lon

    def _extract_event_time(self, raw: Mapping[str, Any], arrival_time_ms: int | None) -> Any:
        event_time = raw.get("event_time")
        if event_time is not None:
            return event_time

        timestamp = raw.get("timestamp")
        if timestamp is not None and timestamp != "":
            if not isinstance(timestamp, str):
                raise MalformedEvent("timestamp", "must be an ISO-8601 string")
            try:
                return parse_iso_timestamp(timestamp)
            except ValueError as e:
                raise MalformedEvent("timestamp", f"is not ISO-8601: {timestamp!r}", cause=e) from e

        if self.allow_arrival_time_fallback and arrival_time_ms is not None:
            return arrival_time_ms

        raise MalformedEvent("timestamp", "is missing and arrival-time fallback is unavailable")
