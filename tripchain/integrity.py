"""
Aggregate Integrity Calculator
One SHA-256 digest per audit-protected vehicle over its full trip and
audit-log history. The digest map is stored in the backup snapshot and
recomputed on restore to detect tampering.

Feed order per vehicle:

    V record
    T record (trip 1), A records of trip 1 ascending by id
    T record (trip 2), A records of trip 2 ascending by id
    ...
"""

from __future__ import annotations

import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping, Sequence, Union

from tripchain.canonical import encode_audit_log, encode_for_aggregate, encode_vehicle
from tripchain.chain import HasherFactory
from tripchain.records import AuditLogEntry, Trip, Vehicle


# ---------------------------------------------------------------------------
# Verification results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationSuccess:
    @property
    def passed(self) -> bool:
        return True


@dataclass(frozen=True)
class TamperingDetected:
    affected_vehicles: list[Vehicle] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return False


VerificationResult = Union[VerificationSuccess, TamperingDetected]


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

class IntegrityHashCalculator:
    def __init__(self, hasher_factory: HasherFactory = hashlib.sha256):
        self._hasher_factory = hasher_factory

    def compute_hashes(
        self,
        vehicles: Sequence[Vehicle],
        trips: Sequence[Trip],
        audit_logs: Sequence[AuditLogEntry],
    ) -> dict[int, str]:
        """Digest per audit-protected vehicle. Other vehicles never appear."""
        protected = [v for v in vehicles if v.audit_protected]
        if not protected:
            return {}

        trips_by_vehicle: dict[int, list[Trip]] = defaultdict(list)
        for trip in trips:
            if trip.vehicle_id is not None:
                trips_by_vehicle[trip.vehicle_id].append(trip)

        logs_by_trip: dict[int, list[AuditLogEntry]] = defaultdict(list)
        for entry in audit_logs:
            logs_by_trip[entry.trip_id].append(entry)

        return {
            vehicle.id: self._vehicle_hash(
                vehicle,
                sorted(trips_by_vehicle.get(vehicle.id, []), key=lambda t: t.id),
                logs_by_trip,
            )
            for vehicle in protected
        }

    def _vehicle_hash(
        self,
        vehicle: Vehicle,
        trips: list[Trip],
        logs_by_trip: Mapping[int, list[AuditLogEntry]],
    ) -> str:
        hasher = self._hasher_factory()
        hasher.update(encode_vehicle(vehicle))
        for trip in trips:
            hasher.update(encode_for_aggregate(trip))
            for entry in sorted(logs_by_trip.get(trip.id, []), key=lambda e: e.id):
                hasher.update(encode_audit_log(entry))
        return hasher.hexdigest()

    def verify_hashes(
        self,
        stored_hashes: Mapping[int, str],
        vehicles: Sequence[Vehicle],
        trips: Sequence[Trip],
        audit_logs: Sequence[AuditLogEntry],
    ) -> VerificationResult:
        """
        Compare stored digests against freshly computed ones.

        An empty map is accepted unconditionally: snapshots written before
        digests existed carry none. Every mismatching vehicle is reported.
        Stored ids with no matching vehicle are skipped.
        """
        if not stored_hashes:
            return VerificationSuccess()

        recomputed = self.compute_hashes(vehicles, trips, audit_logs)
        by_id = {v.id: v for v in vehicles}
        affected: list[Vehicle] = []

        for vehicle_id, expected in stored_hashes.items():
            if recomputed.get(vehicle_id) == expected:
                continue
            vehicle = by_id.get(vehicle_id)
            if vehicle is not None:
                affected.append(vehicle)

        if affected:
            return TamperingDetected(affected_vehicles=affected)
        return VerificationSuccess()
