"""
Integrity Errors
Raised by the backup import protocol when a snapshot must be rejected.
Detection layers (chain and aggregate calculators) never raise; they
return tagged results that the import verifier turns into these errors.
"""

from __future__ import annotations

from typing import Optional, Sequence


class IntegrityViolationError(Exception):
    """Imported data failed integrity verification. Nothing was applied."""

    kind = "INTEGRITY_VIOLATION"

    def __init__(
        self,
        message: str,
        vehicle_ids: Sequence[int] = (),
        trip_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.vehicle_ids = list(vehicle_ids)
        self.trip_id = trip_id

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "vehicle_ids": self.vehicle_ids,
            "trip_id": self.trip_id,
        }


class MissingChainHashError(IntegrityViolationError):
    kind = "MISSING_CHAIN_HASH"


class BrokenChainError(IntegrityViolationError):
    kind = "BROKEN_CHAIN"


class AggregateTamperError(IntegrityViolationError):
    kind = "AGGREGATE_TAMPER_DETECTED"


class InvalidBackupError(ValueError):
    """Snapshot is malformed or uses an unsupported format version."""
