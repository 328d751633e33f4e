"""
Logbook Records
Trip, Vehicle and AuditLogEntry as read by the integrity engine.

Records are immutable. Backups serialize them with camelCase keys and
instants as epoch milliseconds, so both forms are accepted on input.
A trip's chain_hash is never set by callers: it only changes through the
storage write-back issued by the chain maintenance service.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Instant helpers
# ---------------------------------------------------------------------------

def from_epoch_millis(value: int) -> datetime:
    """UTC datetime for an epoch-millisecond timestamp."""
    return EPOCH + timedelta(milliseconds=value)


def to_epoch_millis(value: datetime) -> int:
    """Epoch milliseconds for a datetime. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def _coerce_instant(value: Any) -> Any:
    # bool is an int subclass; let pydantic reject it
    if isinstance(value, int) and not isinstance(value, bool):
        return from_epoch_millis(value)
    return value


class _Record(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

class Vehicle(_Record):
    id: int
    make: str
    model: str
    license_plate: str
    fuel_type: str
    is_primary: bool = False
    notes: Optional[str] = None
    audit_protected: bool = False

    @property
    def display_name(self) -> str:
        return f"{self.make} {self.model} ({self.license_plate})"


class Trip(_Record):
    id: int
    date: datetime
    start_location: str
    end_location: str = ""
    distance_km: float = 0.0
    purpose: str = ""
    purpose_id: Optional[int] = None
    notes: Optional[str] = None
    start_odometer: Optional[int] = None
    end_odometer: Optional[int] = None
    vehicle_id: Optional[int] = None
    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None
    is_active: bool = False
    end_time: Optional[datetime] = None
    gps_distance_km: Optional[float] = None
    business_partner: Optional[str] = None
    route: Optional[str] = None
    is_exported: bool = False
    chain_hash: Optional[str] = None

    @field_validator("date", "end_time", mode="before")
    @classmethod
    def _parse_instant(cls, value: Any) -> Any:
        return _coerce_instant(value)

    @field_serializer("date", "end_time")
    def _dump_instant(self, value: Optional[datetime]) -> Optional[int]:
        return None if value is None else to_epoch_millis(value)


class AuditLogEntry(_Record):
    id: int
    trip_id: int
    field_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_at: datetime

    @field_validator("changed_at", mode="before")
    @classmethod
    def _parse_instant(cls, value: Any) -> Any:
        return _coerce_instant(value)

    @field_serializer("changed_at")
    def _dump_instant(self, value: datetime) -> int:
        return to_epoch_millis(value)
