"""
Trip Chain Service
Keeps the stored chain hashes of audit-protected vehicles consistent.

Call update_chain_hash() after any trip insert or update. The whole
chain of the trip's vehicle is recomputed and only trips whose stored
hash differs are written back, in ascending trip-id order, so that an
interrupted recompute still leaves a valid prefix chain in storage.

At most one recompute per vehicle may run at a time; callers serialize.
"""

from __future__ import annotations

import logging
from typing import Optional

from tripchain.chain import TripChainHashCalculator
from tripchain.storage import LedgerStore, TripStore

logger = logging.getLogger(__name__)


class TripChainService:
    def __init__(
        self,
        store: TripStore,
        calculator: Optional[TripChainHashCalculator] = None,
    ):
        self._store = store
        self._calculator = calculator or TripChainHashCalculator()

    def update_chain_hash(self, trip_id: int) -> int:
        """
        Recompute the chain the given trip belongs to.

        No-op when the trip or its vehicle cannot be found, the trip has no
        vehicle, or the vehicle is not audit-protected. Returns the number
        of chain hashes rewritten.
        """
        trip = self._store.load_trip(trip_id)
        if trip is None:
            logger.debug("Trip %s not found, nothing to chain", trip_id)
            return 0
        if trip.vehicle_id is None:
            logger.debug("Trip %s has no vehicle, nothing to chain", trip_id)
            return 0
        vehicle = self._store.load_vehicle(trip.vehicle_id)
        if vehicle is None:
            logger.debug("Vehicle %s of trip %s not found", trip.vehicle_id, trip_id)
            return 0
        if not vehicle.audit_protected:
            return 0

        return self.recompute_full_chain(vehicle.id)

    def recompute_full_chain(self, vehicle_id: int) -> int:
        """Recompute every chain hash of a vehicle and persist the changed ones."""
        trips = sorted(
            self._store.load_trips_for_vehicle_ordered(vehicle_id),
            key=lambda t: t.id,
        )
        if not trips:
            return 0

        stored = {t.id: t.chain_hash for t in trips}
        rewritten = 0
        for trip_id, chain_hash in self._calculator.compute_chain_hashes(trips):
            if stored[trip_id] != chain_hash:
                self._store.persist_chain_hash(trip_id, chain_hash)
                rewritten += 1

        if rewritten:
            logger.info(
                "Vehicle %s: rewrote %d of %d chain hashes",
                vehicle_id, rewritten, len(trips),
            )
        return rewritten

    def recompute_all_protected(self) -> dict[int, int]:
        """Recompute the chains of every audit-protected vehicle.

        Returns {vehicle_id: rewritten_count}. The store must also offer
        load_all_vehicles() (see LedgerStore).
        """
        store: LedgerStore = self._store  # type: ignore[assignment]
        return {
            vehicle.id: self.recompute_full_chain(vehicle.id)
            for vehicle in store.load_all_vehicles()
            if vehicle.audit_protected
        }
