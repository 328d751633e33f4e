"""
Tripchain SDK: Data Models
"""

from __future__ import annotations

from pydantic import BaseModel


class ImportResult(BaseModel):
    """Result of a POST /backup/import call."""
    accepted: bool
    kind: str | None = None         # MISSING_CHAIN_HASH | BROKEN_CHAIN | AGGREGATE_TAMPER_DETECTED
    error: str | None = None
    vehicle_ids: list[int] = []
    trip_id: int | None = None
    raw: dict                       # full response body


class ChainStatus(BaseModel):
    """Result of a GET /vehicles/{id}/chain/verify call."""
    vehicle_id: int
    valid: bool
    trip_count: int = 0
    broken_trip_id: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
