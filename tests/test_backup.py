"""
Backup Import Verification Test Suite
Missing and broken chains, aggregate tampering, snapshot parsing, the
export/restore round trip and the restore state machine.
"""

from __future__ import annotations

import json

import pytest

from tripchain.backup import (
    BACKUP_VERSION,
    BackupImport,
    BackupImportVerifier,
    BackupSnapshot,
    ImportState,
    ImportStateError,
    export_backup,
    parse_snapshot,
    restore_backup,
)
from tripchain.errors import (
    AggregateTamperError,
    BrokenChainError,
    IntegrityViolationError,
    InvalidBackupError,
    MissingChainHashError,
)
from tripchain.integrity import IntegrityHashCalculator
from tripchain.storage import MemoryLedgerStore

from factories import (
    AUDIT_VEHICLE,
    BASE_MILLIS,
    NORMAL_VEHICLE,
    SECOND_AUDIT_VEHICLE,
    build_chain,
    make_audit_log,
    make_trip,
)


def snapshot_of(vehicles, trips, audit_logs=(), with_hashes=False) -> BackupSnapshot:
    integrity_hashes = None
    if with_hashes:
        integrity_hashes = IntegrityHashCalculator().compute_hashes(vehicles, trips, audit_logs)
    return BackupSnapshot(
        exported_at=BASE_MILLIS,
        vehicles=list(vehicles),
        trips=list(trips),
        audit_logs=list(audit_logs),
        integrity_hashes=integrity_hashes,
    )


@pytest.fixture
def verifier() -> BackupImportVerifier:
    return BackupImportVerifier()


# =================================================================
# Chain checks
# =================================================================

def test_missing_chain_hash_rejected(verifier):
    trips = [make_trip(1), make_trip(2)]
    with pytest.raises(MissingChainHashError) as exc_info:
        verifier.verify(snapshot_of([AUDIT_VEHICLE], trips))

    err = exc_info.value
    assert "BMW" in err.message and "320d" in err.message and "B AB 1234" in err.message
    assert err.vehicle_ids == [AUDIT_VEHICLE.id]
    assert err.kind == "MISSING_CHAIN_HASH"


def test_single_missing_hash_in_otherwise_valid_chain_rejected(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 4)
    trips[2] = trips[2].model_copy(update={"chain_hash": None})
    with pytest.raises(MissingChainHashError):
        verifier.verify(snapshot_of([AUDIT_VEHICLE], trips))


def test_tampered_distance_breaks_chain_at_that_trip(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 5)
    trips[2] = trips[2].model_copy(update={"distance_km": 999.9})

    with pytest.raises(BrokenChainError) as exc_info:
        verifier.verify(snapshot_of([AUDIT_VEHICLE], trips))

    err = exc_info.value
    assert "#3" in err.message
    assert "B AB 1234" in err.message
    assert err.trip_id == 3
    assert err.vehicle_ids == [AUDIT_VEHICLE.id]
    assert isinstance(err, IntegrityViolationError)


def test_deleted_trip_breaks_chain(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 5)
    del trips[1]
    with pytest.raises(BrokenChainError) as exc_info:
        verifier.verify(snapshot_of([AUDIT_VEHICLE], trips))
    assert exc_info.value.trip_id == 3


def test_valid_chain_accepted(verifier):
    verifier.verify(snapshot_of([AUDIT_VEHICLE], build_chain(AUDIT_VEHICLE.id, 5)))


def test_trip_order_in_snapshot_does_not_matter(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 5)
    verifier.verify(snapshot_of([AUDIT_VEHICLE], trips[::-1]))


def test_protected_vehicle_without_trips_accepted(verifier):
    verifier.verify(snapshot_of([AUDIT_VEHICLE], []))


def test_unprotected_vehicle_without_hashes_accepted(verifier):
    trips = [make_trip(1, NORMAL_VEHICLE.id), make_trip(2, NORMAL_VEHICLE.id)]
    verifier.verify(snapshot_of([NORMAL_VEHICLE], trips))


def test_unprotected_vehicle_with_garbage_hashes_accepted(verifier):
    trips = [make_trip(1, NORMAL_VEHICLE.id, chain_hash="nonsense")]
    verifier.verify(snapshot_of([NORMAL_VEHICLE], trips))


def test_mixed_vehicles_only_protected_checked(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3) + [
        make_trip(4, NORMAL_VEHICLE.id),
        make_trip(5, None),
    ]
    verifier.verify(snapshot_of([AUDIT_VEHICLE, NORMAL_VEHICLE], trips))


def test_chains_are_per_vehicle(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3) + build_chain(SECOND_AUDIT_VEHICLE.id, 3, first_id=4)
    verifier.verify(snapshot_of([AUDIT_VEHICLE, SECOND_AUDIT_VEHICLE], trips))

    trips[4] = trips[4].model_copy(update={"route": "Umweg"})
    with pytest.raises(BrokenChainError) as exc_info:
        verifier.verify(snapshot_of([AUDIT_VEHICLE, SECOND_AUDIT_VEHICLE], trips))
    assert exc_info.value.vehicle_ids == [SECOND_AUDIT_VEHICLE.id]
    assert exc_info.value.trip_id == 5


# =================================================================
# Aggregate checks
# =================================================================

def test_snapshot_with_matching_hashes_accepted(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3)
    logs = [make_audit_log(1, 2)]
    verifier.verify(snapshot_of([AUDIT_VEHICLE, NORMAL_VEHICLE], trips, logs, with_hashes=True))


def test_audit_log_tamper_detected(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3)
    logs = [make_audit_log(1, 2)]
    snapshot = snapshot_of([AUDIT_VEHICLE], trips, logs, with_hashes=True)
    snapshot.audit_logs = [logs[0].model_copy(update={"old_value": "999.0"})]

    with pytest.raises(AggregateTamperError) as exc_info:
        verifier.verify(snapshot)
    assert exc_info.value.vehicle_ids == [AUDIT_VEHICLE.id]
    assert "B AB 1234" in exc_info.value.message


def test_removed_audit_log_detected(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3)
    logs = [make_audit_log(1, 2), make_audit_log(2, 3)]
    snapshot = snapshot_of([AUDIT_VEHICLE], trips, logs, with_hashes=True)
    snapshot.audit_logs = logs[:1]
    with pytest.raises(AggregateTamperError):
        verifier.verify(snapshot)


def test_all_affected_vehicles_named(verifier):
    vehicles = [AUDIT_VEHICLE, SECOND_AUDIT_VEHICLE]
    trips = build_chain(AUDIT_VEHICLE.id, 2) + build_chain(SECOND_AUDIT_VEHICLE.id, 2, first_id=3)
    snapshot = snapshot_of(vehicles, trips, with_hashes=True)
    snapshot.vehicles = [v.model_copy(update={"fuel_type": "Elektro"}) for v in vehicles]

    with pytest.raises(AggregateTamperError) as exc_info:
        verifier.verify(snapshot)
    err = exc_info.value
    assert err.vehicle_ids == [AUDIT_VEHICLE.id, SECOND_AUDIT_VEHICLE.id]
    assert "BMW 320d (B AB 1234)" in err.message
    assert "Audi A4 (K LM 42)" in err.message
    assert err.kind == "AGGREGATE_TAMPER_DETECTED"


def test_chain_failure_reported_before_aggregate(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3)
    snapshot = snapshot_of([AUDIT_VEHICLE], trips, with_hashes=True)
    snapshot.trips = [trips[0], trips[1].model_copy(update={"distance_km": 1.0}), trips[2]]
    with pytest.raises(BrokenChainError):
        verifier.verify(snapshot)


def test_missing_integrity_hashes_skip_aggregate(verifier):
    trips = build_chain(AUDIT_VEHICLE.id, 3)
    logs = [make_audit_log(1, 2)]
    snapshot = snapshot_of([AUDIT_VEHICLE], trips, logs)
    snapshot.audit_logs = [logs[0].model_copy(update={"new_value": "1.0"})]
    verifier.verify(snapshot)


# =================================================================
# parse_snapshot
# =================================================================

def test_parse_minimal_document():
    snapshot = parse_snapshot('{"version": 1, "exportedAt": 5}')
    assert snapshot.version == 1
    assert snapshot.exported_at == 5
    assert snapshot.audit_logs == []
    assert snapshot.integrity_hashes is None


def test_parse_camel_case_records():
    raw = {
        "version": 1,
        "vehicles": [{
            "id": 10, "make": "BMW", "model": "320d", "licensePlate": "B AB 1234",
            "fuelType": "Diesel", "auditProtected": True,
        }],
        "trips": [{
            "id": 1, "date": BASE_MILLIS, "startLocation": "Berlin",
            "distanceKm": 12.5, "vehicleId": 10, "chainHash": "ab" * 32,
        }],
        "integrityHashes": {"10": "cd" * 32},
    }
    snapshot = parse_snapshot(json.dumps(raw).encode("utf-8"))
    assert snapshot.vehicles[0].audit_protected
    assert snapshot.trips[0].chain_hash == "ab" * 32
    assert snapshot.trips[0].date.year == 2023
    assert snapshot.integrity_hashes == {10: "cd" * 32}


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"exportedAt": 1}',
        '{"version": 0}',
        '{"version": "1"}',
        '{"version": true}',
        '{"version": 1, "trips": [{"id": "x"}]}',
        '{"version": 1, "purposes": [{"name": "Privat"}]}',
        '{"version": 1, "purposes": [{"id": 1}]}',
        '{"version": 1, "locations": [{"id": 1, "name": "Büro", "latitude": 52.5}]}',
        b'{"version": 1, "x": "\xff"}',
    ],
)
def test_parse_rejects_unusable_documents(raw):
    with pytest.raises(InvalidBackupError):
        parse_snapshot(raw)


def test_newer_version_is_accepted():
    assert parse_snapshot({"version": BACKUP_VERSION + 1}).version == BACKUP_VERSION + 1


# =================================================================
# Export and restore
# =================================================================

def populated_store() -> MemoryLedgerStore:
    trips = build_chain(AUDIT_VEHICLE.id, 4) + [make_trip(5, NORMAL_VEHICLE.id)]
    return MemoryLedgerStore(
        vehicles=[AUDIT_VEHICLE, NORMAL_VEHICLE],
        trips=trips,
        audit_logs=[make_audit_log(1, 2), make_audit_log(2, 5)],
        purposes=[{"id": 1, "name": "Kundentermin", "isBusinessRelevant": True}],
        locations=[{"id": 1, "name": "Büro", "latitude": 52.5, "longitude": 13.4}],
    )


def test_export_carries_hashes_for_protected_vehicles():
    snapshot = export_backup(populated_store(), exported_at=BASE_MILLIS)
    assert snapshot.version == BACKUP_VERSION
    assert snapshot.exported_at == BASE_MILLIS
    assert set(snapshot.integrity_hashes) == {AUDIT_VEHICLE.id}
    assert len(snapshot.trips) == 5
    assert snapshot.purposes[0]["name"] == "Kundentermin"


def test_export_json_uses_camel_case_and_millis():
    document = json.loads(export_backup(populated_store(), exported_at=BASE_MILLIS).to_json())
    assert document["exportedAt"] == BASE_MILLIS
    assert str(AUDIT_VEHICLE.id) in document["integrityHashes"]
    trip = document["trips"][0]
    assert trip["vehicleId"] == AUDIT_VEHICLE.id
    assert isinstance(trip["date"], int)
    assert "chainHash" in trip
    assert "auditLogs" in document


def test_round_trip_restores_into_empty_store():
    source = populated_store()
    snapshot = parse_snapshot(export_backup(source).to_json())

    target = MemoryLedgerStore()
    attempt = restore_backup(target, snapshot)

    assert attempt.state is ImportState.APPLIED
    assert target.load_all_trips() == source.load_all_trips()
    assert target.load_all_vehicles() == source.load_all_vehicles()
    assert target.load_all_audit_logs() == source.load_all_audit_logs()
    assert target.load_all_locations() == source.load_all_locations()


def test_tampered_export_leaves_store_untouched():
    document = json.loads(export_backup(populated_store()).to_json())
    document["trips"][1]["distanceKm"] = 1.0

    target = MemoryLedgerStore(vehicles=[NORMAL_VEHICLE], trips=[make_trip(7, NORMAL_VEHICLE.id)])
    with pytest.raises(BrokenChainError):
        restore_backup(target, parse_snapshot(document))

    assert [v.id for v in target.load_all_vehicles()] == [NORMAL_VEHICLE.id]
    assert [t.id for t in target.load_all_trips()] == [7]


# =================================================================
# Restore state machine
# =================================================================

def test_import_starts_pending():
    assert BackupImport(MemoryLedgerStore()).state is ImportState.PENDING


def test_rejected_import_state():
    attempt = BackupImport(MemoryLedgerStore())
    with pytest.raises(MissingChainHashError):
        attempt.run(snapshot_of([AUDIT_VEHICLE], [make_trip(1)]))
    assert attempt.state is ImportState.REJECTED


def test_import_cannot_run_twice():
    attempt = BackupImport(MemoryLedgerStore())
    attempt.run(snapshot_of([NORMAL_VEHICLE], []))
    assert attempt.state is ImportState.APPLIED
    with pytest.raises(ImportStateError):
        attempt.run(snapshot_of([NORMAL_VEHICLE], []))


def test_rejected_import_cannot_be_retried():
    attempt = BackupImport(MemoryLedgerStore())
    with pytest.raises(MissingChainHashError):
        attempt.run(snapshot_of([AUDIT_VEHICLE], [make_trip(1)]))
    with pytest.raises(ImportStateError):
        attempt.run(snapshot_of([NORMAL_VEHICLE], []))


def test_storage_failure_after_acceptance_propagates():
    class FailingStore(MemoryLedgerStore):
        def replace_all(self, *args, **kwargs):
            if getattr(self, "armed", False):
                raise RuntimeError("disk full")
            super().replace_all(*args, **kwargs)

    store = FailingStore()
    store.armed = True
    attempt = BackupImport(store)
    with pytest.raises(RuntimeError):
        attempt.run(snapshot_of([NORMAL_VEHICLE], []))
    assert attempt.state is ImportState.ACCEPTED
