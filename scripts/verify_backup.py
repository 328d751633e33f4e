#!/usr/bin/env python3
"""
Backup Integrity Verifier

Independently walks a JSON backup snapshot, recomputes every trip chain
of the audit-protected vehicles and their aggregate digests, and reports
whether the snapshot would be accepted on restore.

Usage:  python scripts/verify_backup.py <backup.json>
Exit status is 0 when the backup is intact, 1 otherwise.
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tripchain.backup import parse_snapshot
from tripchain.chain import ChainBroken, TripChainHashCalculator
from tripchain.errors import InvalidBackupError
from tripchain.integrity import IntegrityHashCalculator, TamperingDetected


def verify(path: str) -> bool:
    try:
        snapshot = parse_snapshot(Path(path).read_bytes())
    except (OSError, InvalidBackupError) as exc:
        print(f"Cannot read backup: {exc}")
        return False

    chain = TripChainHashCalculator()
    protected = [v for v in snapshot.vehicles if v.audit_protected]

    if protected:
        print(f"Verifying {len(protected)} audit-protected vehicle(s)...\n")
    else:
        print("No audit-protected vehicles, no chains to verify.\n")

    all_valid = True
    for vehicle in protected:
        trips = sorted(
            (t for t in snapshot.trips if t.vehicle_id == vehicle.id),
            key=lambda t: t.id,
        )
        missing = [t.id for t in trips if t.chain_hash is None]

        if missing:
            all_valid = False
            print(f"  [MISSING] {vehicle.display_name}")
            print(f"         Trips without chain hash: {', '.join(f'#{i}' for i in missing)}")
            print()
            continue

        result = chain.verify_chain(trips)
        if isinstance(result, ChainBroken):
            all_valid = False
            print(f"  [TAMPERED] {vehicle.display_name}")
            print(f"         Broken at: trip #{result.trip.id}")
            print(f"         Stored:    {(result.actual_hash or '')[:32]}...")
            print(f"         EXPECTED:  {result.expected_hash[:32]}...")
        else:
            print(f"  [OK] {vehicle.display_name}")
            print(f"         Trips:     {len(trips)}")
            if trips:
                print(f"         Head:      {trips[-1].chain_hash[:32]}...")
        print()

    if snapshot.integrity_hashes:
        result = IntegrityHashCalculator().verify_hashes(
            snapshot.integrity_hashes,
            snapshot.vehicles,
            snapshot.trips,
            snapshot.audit_logs,
        )
        if isinstance(result, TamperingDetected):
            all_valid = False
            names = ", ".join(v.display_name for v in result.affected_vehicles)
            print(f"  [TAMPERED] Aggregate digest mismatch: {names}")
        else:
            print(f"  [OK] Aggregate digests ({len(snapshot.integrity_hashes)})")
    else:
        print("  [SKIP] Backup carries no aggregate digests")
    print()

    if all_valid:
        print("BACKUP INTEGRITY: VALID (backup would be accepted)")
    else:
        print("BACKUP INTEGRITY: BROKEN (tampering detected)")

    return all_valid


def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/verify_backup.py <backup.json>")
        sys.exit(2)
    ok = verify(sys.argv[1])
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
