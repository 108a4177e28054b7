# =============================================================================
# TravelWatch - Transaction Data Models
# =============================================================================
"""
Pydantic models for card transactions, accounts and fraud candidates.

These models ensure type safety and validation throughout the pipeline,
from normalization to the window buffer to Kafka serialization.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GeoPoint(BaseModel):
    """A (latitude, longitude) pair in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


class Transaction(BaseModel):
    """
    Canonical POS/ATM transaction.

    This is the only record type the window buffer holds. ``event_time`` is
    the moment the transaction happened (payload time), in milliseconds
    since epoch, and is distinct from when the engine saw it.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    event_time: int = Field(..., ge=0, description="Milliseconds since epoch")
    amount: float
    location: GeoPoint
    source_label: str = Field(default="", description="Originating terminal, display only")

    @field_validator("account_id", "transaction_id")
    @classmethod
    def strip_identifier(cls, v: str) -> str:
        """Reject identifiers made only of whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class Account(BaseModel):
    """Account metadata owned by the external system of record."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    def contact_dict(self) -> dict[str, Optional[str]]:
        """Render the ``account_contact`` block of an output event."""
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
        }


class FraudCandidate(BaseModel):
    """
    A suspicious pair of transactions on one account.

    ``first`` is strictly earlier than ``second``. Candidates are append-only:
    they are never updated or retracted once emitted.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str
    first: Transaction
    second: Transaction
    distance_km: float = Field(..., ge=0.0)
    time_delta_ms: int = Field(..., gt=0)
    implied_speed_kmh: float = Field(..., ge=0.0)

    @property
    def pair_key(self) -> str:
        """Identity of the ordered pair, used as the idempotency key downstream."""
        return f"{self.first.transaction_id}:{self.second.transaction_id}"

    def to_output_dict(self, contact: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Serialize for the output sink."""
        return {
            "account_id": self.account_id,
            "first_transaction_id": self.first.transaction_id,
            "second_transaction_id": self.second.transaction_id,
            "first_event_time": self.first.event_time,
            "second_event_time": self.second.event_time,
            "distance_km": round(self.distance_km, 3),
            "time_delta_ms": self.time_delta_ms,
            "implied_speed_kmh": round(self.implied_speed_kmh, 3),
            "first_location": self.first.location.to_dict(),
            "second_location": self.second.location.to_dict(),
            "first_source_label": self.first.source_label,
            "second_source_label": self.second.source_label,
            "account_contact": contact,
        }
