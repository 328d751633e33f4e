"""
Trip Chain Hash Calculator
Linked SHA-256 chain over the trips of one audit-protected vehicle.

    chain_hash(n) = SHA-256(chain_hash(n-1) || encode_for_chain(trip n))

Trips are ordered by id. The first trip uses the genesis value (empty
string) as its previous hash. Modifying, inserting, removing or
reordering any trip breaks every link from that point forward.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence, Union

from tripchain.canonical import encode_for_chain
from tripchain.records import Trip

GENESIS_HASH = ""


class Hasher(Protocol):
    def update(self, data: bytes) -> None: ...

    def hexdigest(self) -> str: ...


HasherFactory = Callable[[], Hasher]


# ---------------------------------------------------------------------------
# Verification results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChainValid:
    """The whole chain is intact."""

    @property
    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class ChainBroken:
    """First trip whose stored chain hash does not match the recomputed one."""
    trip: Trip
    expected_hash: str
    actual_hash: Optional[str]

    @property
    def is_valid(self) -> bool:
        return False


ChainVerificationResult = Union[ChainValid, ChainBroken]


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

class TripChainHashCalculator:
    """
    Computes and verifies per-vehicle trip hash chains.

    Stateless: every method is a pure function of its arguments. The
    digest primitive is injected so tests can substitute a fake.
    """

    def __init__(self, hasher_factory: HasherFactory = hashlib.sha256):
        self._hasher_factory = hasher_factory

    def compute_chain_hash(self, trip: Trip, previous_chain_hash: Optional[str]) -> str:
        """Chain hash for ``trip`` given its predecessor's hash.

        ``None`` is treated as the genesis hash. The trip's own stored
        ``chain_hash`` does not take part in the computation.
        """
        hasher = self._hasher_factory()
        hasher.update((previous_chain_hash or GENESIS_HASH).encode("utf-8"))
        hasher.update(encode_for_chain(trip))
        return hasher.hexdigest()

    def compute_chain_hashes(self, trips: Sequence[Trip]) -> list[tuple[int, str]]:
        """(trip_id, chain_hash) for trips already sorted by id ascending."""
        hashes: list[tuple[int, str]] = []
        previous = GENESIS_HASH
        for trip in trips:
            previous = self.compute_chain_hash(trip, previous)
            hashes.append((trip.id, previous))
        return hashes

    def verify_chain(self, trips: Sequence[Trip]) -> ChainVerificationResult:
        """Walk the chain forward and stop at the first broken link."""
        previous = GENESIS_HASH
        for trip in trips:
            expected = self.compute_chain_hash(trip, previous)
            if trip.chain_hash != expected:
                return ChainBroken(
                    trip=trip,
                    expected_hash=expected,
                    actual_hash=trip.chain_hash,
                )
            previous = expected
        return ChainValid()
