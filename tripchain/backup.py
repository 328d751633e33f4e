"""
Backup Export / Import
JSON backup snapshots of the logbook and the all-or-nothing restore
protocol that rejects tampered or incomplete data.

Restore flow:
  1. Every audit-protected vehicle with trips must have a chain hash on
     every trip (MissingChainHashError).
  2. Each such chain must verify (BrokenChainError, first break only).
  3. If the snapshot carries integrity hashes, the aggregate digests of
     all protected vehicles must match (AggregateTamperError, all
     affected vehicles).
  4. Only then is the data written to storage.
Vehicles that are not audit-protected are exempt from every check.
"""

from __future__ import annotations

import json
import logging
import time
from enum import Enum, auto
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from tripchain.chain import ChainBroken, TripChainHashCalculator
from tripchain.errors import (
    AggregateTamperError,
    BrokenChainError,
    InvalidBackupError,
    MissingChainHashError,
)
from tripchain.integrity import IntegrityHashCalculator, TamperingDetected
from tripchain.records import AuditLogEntry, Trip, Vehicle
from tripchain.storage import LedgerStore

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1

_PURPOSE_KEYS = ("id", "name")
_LOCATION_KEYS = ("id", "name", "latitude", "longitude")


# ---------------------------------------------------------------------------
# Snapshot envelope
# ---------------------------------------------------------------------------

class BackupSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = BACKUP_VERSION
    exported_at: int = 0                       # epoch millis
    vehicles: list[Vehicle] = Field(default_factory=list)
    purposes: list[dict[str, Any]] = Field(default_factory=list)
    locations: list[dict[str, Any]] = Field(default_factory=list)
    trips: list[Trip] = Field(default_factory=list)
    audit_logs: list[AuditLogEntry] = Field(default_factory=list)
    integrity_hashes: Optional[dict[int, str]] = None

    @field_validator("purposes")
    @classmethod
    def _check_purposes(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return _require_keys(value, _PURPOSE_KEYS, "purpose")

    @field_validator("locations")
    @classmethod
    def _check_locations(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return _require_keys(value, _LOCATION_KEYS, "location")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def _require_keys(
    items: list[dict[str, Any]], keys: tuple[str, ...], kind: str
) -> list[dict[str, Any]]:
    # Carried opaquely, but storage inserts these columns unconditionally
    for item in items:
        missing = [k for k in keys if item.get(k) is None]
        if missing:
            raise ValueError(f"{kind} entry missing {', '.join(missing)}")
    return items


def parse_snapshot(raw: Union[str, bytes, dict[str, Any]]) -> BackupSnapshot:
    """Parse a backup document. Raises InvalidBackupError when unusable."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise InvalidBackupError(f"Backup is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise InvalidBackupError("Backup must be a JSON object")

    version = raw.get("version", 0)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise InvalidBackupError(f"Unsupported backup format version: {version!r}")

    try:
        return BackupSnapshot.model_validate(raw)
    except ValidationError as exc:
        raise InvalidBackupError(f"Malformed backup: {exc}") from exc


def export_backup(
    store: LedgerStore,
    integrity: Optional[IntegrityHashCalculator] = None,
    exported_at: Optional[int] = None,
) -> BackupSnapshot:
    """Snapshot the whole logbook together with its integrity digests."""
    integrity = integrity or IntegrityHashCalculator()
    vehicles = store.load_all_vehicles()
    trips = store.load_all_trips()
    audit_logs = store.load_all_audit_logs()

    snapshot = BackupSnapshot(
        version=BACKUP_VERSION,
        exported_at=exported_at if exported_at is not None else int(time.time() * 1000),
        vehicles=vehicles,
        purposes=store.load_all_purposes(),
        locations=store.load_all_locations(),
        trips=trips,
        audit_logs=audit_logs,
        integrity_hashes=integrity.compute_hashes(vehicles, trips, audit_logs),
    )
    logger.info(
        "Backup created: %d vehicles, %d trips, %d protected digests",
        len(vehicles), len(trips), len(snapshot.integrity_hashes),
    )
    return snapshot


# ---------------------------------------------------------------------------
# Import verification
# ---------------------------------------------------------------------------

class BackupImportVerifier:
    """Accepts a snapshot silently or raises an IntegrityViolationError."""

    def __init__(
        self,
        chain: Optional[TripChainHashCalculator] = None,
        integrity: Optional[IntegrityHashCalculator] = None,
    ):
        self._chain = chain or TripChainHashCalculator()
        self._integrity = integrity or IntegrityHashCalculator()

    def verify(self, snapshot: BackupSnapshot) -> None:
        for vehicle in snapshot.vehicles:
            if vehicle.audit_protected:
                self._verify_vehicle_chain(vehicle, snapshot.trips)

        if snapshot.integrity_hashes:
            result = self._integrity.verify_hashes(
                snapshot.integrity_hashes,
                snapshot.vehicles,
                snapshot.trips,
                snapshot.audit_logs,
            )
            if isinstance(result, TamperingDetected):
                names = ", ".join(v.display_name for v in result.affected_vehicles)
                raise AggregateTamperError(
                    f"Integrity check failed for audit-protected vehicle(s) {names}. "
                    "Trip or audit log data was modified after export.",
                    vehicle_ids=[v.id for v in result.affected_vehicles],
                )

    def _verify_vehicle_chain(self, vehicle: Vehicle, trips: list[Trip]) -> None:
        vehicle_trips = sorted(
            (t for t in trips if t.vehicle_id == vehicle.id),
            key=lambda t: t.id,
        )
        if not vehicle_trips:
            return

        if any(t.chain_hash is None for t in vehicle_trips):
            raise MissingChainHashError(
                f"Missing hash chain for audit-protected vehicle {vehicle.display_name}. "
                "All trips must carry verifiable chain hashes.",
                vehicle_ids=[vehicle.id],
            )

        result = self._chain.verify_chain(vehicle_trips)
        if isinstance(result, ChainBroken):
            raise BrokenChainError(
                f"Hash chain for vehicle {vehicle.display_name} is broken at trip "
                f"#{result.trip.id}. The backup data may have been tampered with.",
                vehicle_ids=[vehicle.id],
                trip_id=result.trip.id,
            )


# ---------------------------------------------------------------------------
# Restore state machine
# ---------------------------------------------------------------------------

class ImportState(Enum):
    PENDING = auto()
    VERIFYING = auto()
    ACCEPTED = auto()
    REJECTED = auto()
    APPLIED = auto()


class ImportStateError(Exception):
    """Raised when an illegal restore transition is attempted."""


_TRANSITIONS: dict[ImportState, set[ImportState]] = {
    ImportState.PENDING: {ImportState.VERIFYING},
    ImportState.VERIFYING: {ImportState.ACCEPTED, ImportState.REJECTED},
    ImportState.ACCEPTED: {ImportState.APPLIED},
    ImportState.REJECTED: set(),
    ImportState.APPLIED: set(),
}


class BackupImport:
    """
    One restore attempt: PENDING -> VERIFYING -> ACCEPTED -> APPLIED,
    or VERIFYING -> REJECTED. Storage is only touched after ACCEPTED.
    """

    def __init__(self, store: LedgerStore, verifier: Optional[BackupImportVerifier] = None):
        self._store = store
        self._verifier = verifier or BackupImportVerifier()
        self._state = ImportState.PENDING

    @property
    def state(self) -> ImportState:
        return self._state

    def _transition(self, target: ImportState) -> None:
        allowed = _TRANSITIONS[self._state]
        if target not in allowed:
            raise ImportStateError(
                f"Illegal transition: {self._state.name} -> {target.name}"
            )
        self._state = target

    def run(self, snapshot: BackupSnapshot) -> None:
        self._transition(ImportState.VERIFYING)
        try:
            self._verifier.verify(snapshot)
        except Exception:
            self._transition(ImportState.REJECTED)
            logger.warning("Backup import rejected", exc_info=True)
            raise
        self._transition(ImportState.ACCEPTED)

        self._store.replace_all(
            snapshot.vehicles,
            snapshot.trips,
            snapshot.audit_logs,
            snapshot.purposes,
            snapshot.locations,
        )
        self._transition(ImportState.APPLIED)
        logger.info(
            "Backup restored: %d vehicles, %d trips, %d audit log entries",
            len(snapshot.vehicles), len(snapshot.trips), len(snapshot.audit_logs),
        )


def restore_backup(
    store: LedgerStore,
    snapshot: BackupSnapshot,
    verifier: Optional[BackupImportVerifier] = None,
) -> BackupImport:
    """Verify and apply a snapshot. Raises without touching storage on rejection."""
    attempt = BackupImport(store, verifier)
    attempt.run(snapshot)
    return attempt
