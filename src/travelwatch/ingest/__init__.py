"""
Ingestion module: canonical records and payload normalization.

This module contains:
- Transaction, GeoPoint, Account, FraudCandidate: pydantic models
- EventNormalizer: raw JSON payload -> Transaction
"""

from travelwatch.ingest.models import Account, FraudCandidate, GeoPoint, Transaction
from travelwatch.ingest.normalizer import EventNormalizer, parse_iso_timestamp

__all__ = [
    # Models
    "Account",
    "FraudCandidate",
    "GeoPoint",
    "Transaction",
    # Normalizer
    "EventNormalizer",
    "parse_iso_timestamp",
]
