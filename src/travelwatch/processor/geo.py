# =============================================================================
# TravelWatch - Geo Enrichment
# =============================================================================
"""
Distance and implied speed for a suspicious transaction pair.

Example:
    candidate = enrich_pair(first, second)
    if candidate.implied_speed_kmh > 900:
        # faster than a commercial jet
        pass
"""

from __future__ import annotations

from math import atan2, cos, radians, sin, sqrt

from travelwatch.exceptions import EnrichmentError
from travelwatch.ingest.models import FraudCandidate, Transaction

# Earth's mean radius in kilometers
EARTH_RADIUS_KM = 6371.0

MS_PER_HOUR = 3_600_000


def haversine_distance(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Uses the Haversine formula to compute distance in kilometers.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def enrich_pair(first: Transaction, second: Transaction) -> FraudCandidate:
    """
    Build the fraud candidate for an already filtered pair.

    Args:
        first: Earlier transaction
        second: Strictly later transaction on the same account

    Returns:
        FraudCandidate with distance, time delta and implied speed

    Raises:
        EnrichmentError: If the pair spans accounts or is not strictly ordered
    """
    if first.account_id != second.account_id:
        raise EnrichmentError(
            f"Cannot pair transactions across accounts: "
            f"{first.account_id} vs {second.account_id}"
        )

    time_delta_ms = second.event_time - first.event_time
    if time_delta_ms <= 0:
        raise EnrichmentError(
            f"Pair {first.transaction_id}:{second.transaction_id} "
            f"has non-positive time delta ({time_delta_ms} ms)"
        )

    distance_km = haversine_distance(
        first.location.lat,
        first.location.lon,
        second.location.lat,
        second.location.lon,
    )

    return FraudCandidate(
        account_id=first.account_id,
        first=first,
        second=second,
        distance_km=distance_km,
        time_delta_ms=time_delta_ms,
        implied_speed_kmh=distance_km / (time_delta_ms / MS_PER_HOUR),
    )
