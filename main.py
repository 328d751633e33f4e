"""
Tripchain Gateway
HTTP surface over the logbook integrity engine.

The logbook application calls /trips/{id}/chain after every trip insert
or update so audit-protected chains stay current. Backups are exported
with their integrity digests and only restored when every audit-protected
vehicle passes chain and digest verification.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tripchain.backup import export_backup, parse_snapshot, restore_backup
from tripchain.chain import ChainBroken, TripChainHashCalculator
from tripchain.chain_service import TripChainService
from tripchain.errors import IntegrityViolationError, InvalidBackupError
from tripchain.storage import MemoryLedgerStore, PostgresLedgerStore

logging.basicConfig(
    level=os.environ.get("TRIPCHAIN_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tripchain.gateway")

STORE_BACKEND = os.environ.get("TRIPCHAIN_STORE", "postgres")

# ---------------------------------------------------------------------------
# App + shared services
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Tripchain Integrity Gateway",
    version="1.0.0",
)


def _build_store():
    if STORE_BACKEND == "memory":
        return MemoryLedgerStore()
    return PostgresLedgerStore()


store = _build_store()
calculator = TripChainHashCalculator()
chain_service = TripChainService(store, calculator)

# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class ChainUpdateResponse(BaseModel):
    trip_id: int
    rewritten: int


class RecomputeResponse(BaseModel):
    vehicle_id: int
    rewritten: int


class ChainReport(BaseModel):
    vehicle_id: int
    valid: bool
    trip_count: int
    broken_trip_id: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None


class RestoreResponse(BaseModel):
    status: str
    vehicles: int
    trips: int
    audit_logs: int


def _load_vehicle_or_404(vehicle_id: int):
    vehicle = store.load_vehicle(vehicle_id)
    if vehicle is None:
        raise HTTPException(status_code=404, detail=f"Unknown vehicle: {vehicle_id}")
    return vehicle


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "operational", "service": "tripchain-gateway"}


@app.post("/trips/{trip_id}/chain", response_model=ChainUpdateResponse)
def update_trip_chain(trip_id: int):
    """
    Recompute the chain of the trip's vehicle after an insert or update.
    Trips without an audit-protected vehicle are accepted as a no-op.
    """
    rewritten = chain_service.update_chain_hash(trip_id)
    return ChainUpdateResponse(trip_id=trip_id, rewritten=rewritten)


@app.post("/vehicles/{vehicle_id}/chain/recompute", response_model=RecomputeResponse)
def recompute_vehicle_chain(vehicle_id: int):
    vehicle = _load_vehicle_or_404(vehicle_id)
    if not vehicle.audit_protected:
        return JSONResponse(
            status_code=409,
            content={
                "error": f"Vehicle {vehicle.display_name} is not audit-protected.",
                "vehicle_id": vehicle_id,
            },
        )
    rewritten = chain_service.recompute_full_chain(vehicle_id)
    return RecomputeResponse(vehicle_id=vehicle_id, rewritten=rewritten)


@app.get("/vehicles/{vehicle_id}/chain/verify", response_model=ChainReport)
def verify_vehicle_chain(vehicle_id: int):
    _load_vehicle_or_404(vehicle_id)
    trips = store.load_trips_for_vehicle_ordered(vehicle_id)
    result = calculator.verify_chain(trips)
    if isinstance(result, ChainBroken):
        logger.warning(
            "Chain of vehicle %s broken at trip %s", vehicle_id, result.trip.id
        )
        return ChainReport(
            vehicle_id=vehicle_id,
            valid=False,
            trip_count=len(trips),
            broken_trip_id=result.trip.id,
            expected_hash=result.expected_hash,
            actual_hash=result.actual_hash,
        )
    return ChainReport(vehicle_id=vehicle_id, valid=True, trip_count=len(trips))


@app.get("/backup/export")
def export():
    snapshot = export_backup(store)
    return JSONResponse(content=snapshot.model_dump(mode="json", by_alias=True))


@app.post("/backup/import", response_model=RestoreResponse)
async def import_backup(request: Request):
    """
    Restore a backup snapshot.

    Flow:
      1. Parse the envelope (422 on malformed JSON or unsupported version).
      2. Verify every audit-protected vehicle (409 on any integrity error).
      3. Replace the logbook with the snapshot contents.
    """
    raw: Any
    try:
        raw = await request.json()
    except ValueError as exc:
        # JSONDecodeError and UnicodeDecodeError
        return JSONResponse(status_code=422, content={"error": f"Invalid JSON: {exc}"})

    try:
        snapshot = parse_snapshot(raw)
    except InvalidBackupError as exc:
        return JSONResponse(status_code=422, content={"error": str(exc)})

    try:
        restore_backup(store, snapshot)
    except IntegrityViolationError as exc:
        return JSONResponse(status_code=409, content=exc.to_dict())

    return RestoreResponse(
        status="restored",
        vehicles=len(snapshot.vehicles),
        trips=len(snapshot.trips),
        audit_logs=len(snapshot.audit_logs),
    )
