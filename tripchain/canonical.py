"""
Canonical Encoder
Deterministic byte representations of logbook records, used only as
hash input.

Two trip forms exist: the chain form feeds the per-vehicle hash chain,
the aggregate form feeds the backup integrity digest. Their field sets
differ (the chain form carries the active flag and GPS distance, the
aggregate form does not). Hashes of both are committed to existing
backups, so neither layout may change; a new layout needs a new,
versioned encoder.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Any

from tripchain.records import AuditLogEntry, Trip, Vehicle, to_epoch_millis

NULL = "null"
SEPARATOR = "|"


# ---------------------------------------------------------------------------
# Field rendering
# ---------------------------------------------------------------------------

def format_double(value: float) -> str:
    """Render a float the way Java's Double.toString does.

    Plain decimal notation inside [1e-3, 1e7), computerized scientific
    notation (``1.0E7``, ``2.5E-4``) outside it.
    """
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    magnitude = abs(value)
    if magnitude == 0.0 or 1e-3 <= magnitude < 1e7:
        return repr(value)

    sign = "-" if value < 0 else ""
    decimal = Decimal(repr(magnitude))
    digits = "".join(str(d) for d in decimal.as_tuple().digits).rstrip("0") or "0"
    mantissa = f"{digits[0]}.{digits[1:] or '0'}"
    return f"{sign}{mantissa}E{decimal.adjusted()}"


def render_field(value: Any) -> str:
    """Render one field value; absent values become the ``null`` sentinel."""
    if value is None:
        return NULL
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return str(to_epoch_millis(value))
    if isinstance(value, float):
        return format_double(value)
    return str(value)


def _record(*fields: Any) -> bytes:
    line = SEPARATOR.join(render_field(f) for f in fields)
    return (line + "\n").encode("utf-8")


# ---------------------------------------------------------------------------
# Encoders
# ---------------------------------------------------------------------------

def encode_for_chain(trip: Trip) -> bytes:
    """Chain-form encoding of a trip. Never includes ``chain_hash``."""
    return _record(
        trip.id,
        trip.date,
        trip.start_location,
        trip.end_location,
        float(trip.distance_km),
        trip.purpose,
        trip.purpose_id,
        trip.notes,
        trip.start_odometer,
        trip.end_odometer,
        trip.vehicle_id,
        trip.is_cancelled,
        trip.cancellation_reason,
        trip.is_active,
        trip.end_time,
        None if trip.gps_distance_km is None else float(trip.gps_distance_km),
        trip.business_partner,
        trip.route,
    )


def encode_for_aggregate(trip: Trip) -> bytes:
    """Aggregate-form encoding of a trip (no active flag, no GPS distance)."""
    return _record(
        "T",
        trip.id,
        trip.date,
        trip.start_location,
        trip.end_location,
        float(trip.distance_km),
        trip.purpose,
        trip.purpose_id,
        trip.notes,
        trip.start_odometer,
        trip.end_odometer,
        trip.vehicle_id,
        trip.is_cancelled,
        trip.cancellation_reason,
        trip.end_time,
        trip.business_partner,
        trip.route,
    )


def encode_vehicle(vehicle: Vehicle) -> bytes:
    return _record(
        "V",
        vehicle.id,
        vehicle.make,
        vehicle.model,
        vehicle.license_plate,
        vehicle.fuel_type,
        vehicle.audit_protected,
    )


def encode_audit_log(entry: AuditLogEntry) -> bytes:
    return _record(
        "A",
        entry.id,
        entry.trip_id,
        entry.field_name,
        entry.old_value,
        entry.new_value,
        entry.changed_at,
    )
