"""
Logbook Storage
Persistence collaborators consumed by the integrity engine.

The engine only needs ordered read access to a vehicle's trips, single
record lookups and a chain-hash write-back. PostgresLedgerStore serves
them from PostgreSQL (schema in schema.sql); MemoryLedgerStore keeps
everything in process for embedding and tests.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional, Protocol, Sequence

import psycopg2

from tripchain.records import AuditLogEntry, Trip, Vehicle

logger = logging.getLogger(__name__)

DB_CONFIG = {
    "host": os.environ.get("TRIPCHAIN_DB_HOST", "localhost"),
    "port": int(os.environ.get("TRIPCHAIN_DB_PORT", "5432")),
    "dbname": os.environ.get("TRIPCHAIN_DB_NAME", "tripchain"),
    "user": os.environ.get("TRIPCHAIN_DB_USER", "tripchain"),
    "password": os.environ.get("TRIPCHAIN_DB_PASSWORD", "tripchain"),
}


# ---------------------------------------------------------------------------
# Collaborator protocol
# ---------------------------------------------------------------------------

class TripStore(Protocol):
    def load_trip(self, trip_id: int) -> Optional[Trip]: ...

    def load_vehicle(self, vehicle_id: int) -> Optional[Vehicle]: ...

    def load_trips_for_vehicle_ordered(self, vehicle_id: int) -> list[Trip]: ...

    def persist_chain_hash(self, trip_id: int, chain_hash: str) -> None: ...


class LedgerStore(TripStore, Protocol):
    """TripStore plus the bulk access backup export and restore need."""

    def load_all_vehicles(self) -> list[Vehicle]: ...

    def load_all_trips(self) -> list[Trip]: ...

    def load_all_audit_logs(self) -> list[AuditLogEntry]: ...

    def load_all_purposes(self) -> list[dict[str, Any]]: ...

    def load_all_locations(self) -> list[dict[str, Any]]: ...

    def replace_all(
        self,
        vehicles: Sequence[Vehicle],
        trips: Sequence[Trip],
        audit_logs: Sequence[AuditLogEntry],
        purposes: Sequence[dict[str, Any]] = (),
        locations: Sequence[dict[str, Any]] = (),
    ) -> None: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryLedgerStore:
    """Dict-backed LedgerStore. Not thread-safe."""

    def __init__(
        self,
        vehicles: Sequence[Vehicle] = (),
        trips: Sequence[Trip] = (),
        audit_logs: Sequence[AuditLogEntry] = (),
        purposes: Sequence[dict[str, Any]] = (),
        locations: Sequence[dict[str, Any]] = (),
    ):
        self._vehicles: dict[int, Vehicle] = {}
        self._trips: dict[int, Trip] = {}
        self._audit_logs: dict[int, AuditLogEntry] = {}
        self._purposes: list[dict[str, Any]] = []
        self._locations: list[dict[str, Any]] = []
        self.replace_all(vehicles, trips, audit_logs, purposes, locations)

    def load_trip(self, trip_id: int) -> Optional[Trip]:
        return self._trips.get(trip_id)

    def load_vehicle(self, vehicle_id: int) -> Optional[Vehicle]:
        return self._vehicles.get(vehicle_id)

    def load_trips_for_vehicle_ordered(self, vehicle_id: int) -> list[Trip]:
        return sorted(
            (t for t in self._trips.values() if t.vehicle_id == vehicle_id),
            key=lambda t: t.id,
        )

    def persist_chain_hash(self, trip_id: int, chain_hash: str) -> None:
        trip = self._trips[trip_id]
        self._trips[trip_id] = trip.model_copy(update={"chain_hash": chain_hash})

    def save_trip(self, trip: Trip) -> None:
        """Insert or overwrite a trip record as the logbook application would."""
        self._trips[trip.id] = trip

    def load_all_vehicles(self) -> list[Vehicle]:
        return sorted(self._vehicles.values(), key=lambda v: v.id)

    def load_all_trips(self) -> list[Trip]:
        return sorted(self._trips.values(), key=lambda t: t.id)

    def load_all_audit_logs(self) -> list[AuditLogEntry]:
        return sorted(self._audit_logs.values(), key=lambda e: e.id)

    def load_all_purposes(self) -> list[dict[str, Any]]:
        return [dict(p) for p in self._purposes]

    def load_all_locations(self) -> list[dict[str, Any]]:
        return [dict(loc) for loc in self._locations]

    def replace_all(
        self,
        vehicles: Sequence[Vehicle],
        trips: Sequence[Trip],
        audit_logs: Sequence[AuditLogEntry],
        purposes: Sequence[dict[str, Any]] = (),
        locations: Sequence[dict[str, Any]] = (),
    ) -> None:
        # Build first, swap last: a failure leaves the previous data intact
        new_vehicles = {v.id: v for v in vehicles}
        new_trips = {t.id: t for t in trips}
        new_logs = {e.id: e for e in audit_logs}
        self._vehicles = new_vehicles
        self._trips = new_trips
        self._audit_logs = new_logs
        self._purposes = [dict(p) for p in purposes]
        self._locations = [dict(loc) for loc in locations]


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

_VEHICLE_COLUMNS = (
    "id, make, model, license_plate, fuel_type, is_primary, notes, audit_protected"
)

_TRIP_COLUMNS = (
    "id, date, start_location, end_location, distance_km, purpose, purpose_id, "
    "notes, start_odometer, end_odometer, vehicle_id, is_cancelled, "
    "cancellation_reason, is_active, end_time, gps_distance_km, "
    "business_partner, route, is_exported, chain_hash"
)

_AUDIT_LOG_COLUMNS = "id, trip_id, field_name, old_value, new_value, changed_at"

_PURPOSE_COLUMNS = ("id", "name", "is_business_relevant", "color", "is_default")
_LOCATION_COLUMNS = ("id", "name", "latitude", "longitude", "address", "usage_count")


def _row_to_vehicle(row: tuple) -> Vehicle:
    return Vehicle(
        id=row[0],
        make=row[1],
        model=row[2],
        license_plate=row[3],
        fuel_type=row[4],
        is_primary=row[5],
        notes=row[6],
        audit_protected=row[7],
    )


def _row_to_trip(row: tuple) -> Trip:
    return Trip(
        id=row[0],
        date=row[1],
        start_location=row[2],
        end_location=row[3],
        distance_km=row[4],
        purpose=row[5],
        purpose_id=row[6],
        notes=row[7],
        start_odometer=row[8],
        end_odometer=row[9],
        vehicle_id=row[10],
        is_cancelled=row[11],
        cancellation_reason=row[12],
        is_active=row[13],
        end_time=row[14],
        gps_distance_km=row[15],
        business_partner=row[16],
        route=row[17],
        is_exported=row[18],
        chain_hash=row[19],
    )


def _row_to_audit_log(row: tuple) -> AuditLogEntry:
    return AuditLogEntry(
        id=row[0],
        trip_id=row[1],
        field_name=row[2],
        old_value=row[3],
        new_value=row[4],
        changed_at=row[5],
    )


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class PostgresLedgerStore:
    """
    LedgerStore backed by PostgreSQL.

    Every chain-hash write-back is committed on its own so that a crash
    mid-recompute leaves a valid prefix of the chain persisted.
    """

    def __init__(self, db_config: dict | None = None):
        self._db_config = db_config or DB_CONFIG

    def _connect(self):
        return psycopg2.connect(**self._db_config)

    def _fetch_all(self, query: str, params: tuple = ()) -> list[tuple]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(query, params)
            rows = cur.fetchall()
            cur.close()
            return rows
        finally:
            conn.close()

    def _fetch_one(self, query: str, params: tuple) -> Optional[tuple]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(query, params)
            row = cur.fetchone()
            cur.close()
            return row
        finally:
            conn.close()

    # -- TripStore ----------------------------------------------------------

    def load_trip(self, trip_id: int) -> Optional[Trip]:
        row = self._fetch_one(
            f"SELECT {_TRIP_COLUMNS} FROM trips WHERE id = %s", (trip_id,)
        )
        return None if row is None else _row_to_trip(row)

    def load_vehicle(self, vehicle_id: int) -> Optional[Vehicle]:
        row = self._fetch_one(
            f"SELECT {_VEHICLE_COLUMNS} FROM vehicles WHERE id = %s", (vehicle_id,)
        )
        return None if row is None else _row_to_vehicle(row)

    def load_trips_for_vehicle_ordered(self, vehicle_id: int) -> list[Trip]:
        rows = self._fetch_all(
            f"SELECT {_TRIP_COLUMNS} FROM trips WHERE vehicle_id = %s ORDER BY id ASC",
            (vehicle_id,),
        )
        return [_row_to_trip(r) for r in rows]

    def persist_chain_hash(self, trip_id: int, chain_hash: str) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "UPDATE trips SET chain_hash = %s WHERE id = %s",
                (chain_hash, trip_id),
            )
            conn.commit()
            cur.close()
        finally:
            conn.close()

    # -- Bulk access --------------------------------------------------------

    def load_all_vehicles(self) -> list[Vehicle]:
        rows = self._fetch_all(f"SELECT {_VEHICLE_COLUMNS} FROM vehicles ORDER BY id ASC")
        return [_row_to_vehicle(r) for r in rows]

    def load_all_trips(self) -> list[Trip]:
        rows = self._fetch_all(f"SELECT {_TRIP_COLUMNS} FROM trips ORDER BY id ASC")
        return [_row_to_trip(r) for r in rows]

    def load_all_audit_logs(self) -> list[AuditLogEntry]:
        rows = self._fetch_all(
            f"SELECT {_AUDIT_LOG_COLUMNS} FROM trip_audit_log ORDER BY id ASC"
        )
        return [_row_to_audit_log(r) for r in rows]

    def load_all_purposes(self) -> list[dict[str, Any]]:
        rows = self._fetch_all(
            f"SELECT {', '.join(_PURPOSE_COLUMNS)} FROM trip_purposes ORDER BY id ASC"
        )
        return [
            {_camel(col): value for col, value in zip(_PURPOSE_COLUMNS, row)}
            for row in rows
        ]

    def load_all_locations(self) -> list[dict[str, Any]]:
        rows = self._fetch_all(
            f"SELECT {', '.join(_LOCATION_COLUMNS)} FROM saved_locations ORDER BY id ASC"
        )
        return [
            {_camel(col): value for col, value in zip(_LOCATION_COLUMNS, row)}
            for row in rows
        ]

    def replace_all(
        self,
        vehicles: Sequence[Vehicle],
        trips: Sequence[Trip],
        audit_logs: Sequence[AuditLogEntry],
        purposes: Sequence[dict[str, Any]] = (),
        locations: Sequence[dict[str, Any]] = (),
    ) -> None:
        """Swap the whole logbook for imported data in one transaction."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "TRUNCATE trip_audit_log, trips, vehicles, trip_purposes, "
                "saved_locations RESTART IDENTITY CASCADE"
            )
            for p in purposes:
                cur.execute(
                    "INSERT INTO trip_purposes (id, name, is_business_relevant, color, is_default) "
                    "VALUES (%s, %s, %s, %s, %s)",
                    (
                        p["id"],
                        p["name"],
                        p.get("isBusinessRelevant", False),
                        p.get("color", "#6200EE"),
                        p.get("isDefault", False),
                    ),
                )
            for v in vehicles:
                cur.execute(
                    f"INSERT INTO vehicles ({_VEHICLE_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        v.id, v.make, v.model, v.license_plate, v.fuel_type,
                        v.is_primary, v.notes, v.audit_protected,
                    ),
                )
            for loc in locations:
                cur.execute(
                    "INSERT INTO saved_locations (id, name, latitude, longitude, address, usage_count) "
                    "VALUES (%s, %s, %s, %s, %s, %s)",
                    (
                        loc["id"],
                        loc["name"],
                        loc["latitude"],
                        loc["longitude"],
                        loc.get("address"),
                        loc.get("usageCount", 0),
                    ),
                )
            for t in trips:
                cur.execute(
                    f"INSERT INTO trips ({_TRIP_COLUMNS}) VALUES "
                    "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, "
                    "%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        t.id, t.date, t.start_location, t.end_location,
                        t.distance_km, t.purpose, t.purpose_id, t.notes,
                        t.start_odometer, t.end_odometer, t.vehicle_id,
                        t.is_cancelled, t.cancellation_reason, t.is_active,
                        t.end_time, t.gps_distance_km, t.business_partner,
                        t.route, t.is_exported, t.chain_hash,
                    ),
                )
            for e in audit_logs:
                cur.execute(
                    f"INSERT INTO trip_audit_log ({_AUDIT_LOG_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s)",
                    (e.id, e.trip_id, e.field_name, e.old_value, e.new_value, e.changed_at),
                )
            for table in ("trip_purposes", "vehicles", "saved_locations", "trips", "trip_audit_log"):
                cur.execute(
                    f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
                    f"COALESCE(MAX(id), 0) + 1, false) FROM {table}"
                )
            conn.commit()
            cur.close()
        except psycopg2.Error:
            conn.rollback()
            logger.exception("Restore transaction rolled back")
            raise
        finally:
            conn.close()
        logger.info(
            "Logbook replaced: %d vehicles, %d trips, %d audit log entries",
            len(vehicles), len(trips), len(audit_logs),
        )
