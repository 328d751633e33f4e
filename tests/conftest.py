"""Shared fixtures: recording store and a TestClient wired to an in-memory gateway."""

from __future__ import annotations

import pytest

from tripchain.storage import MemoryLedgerStore

from factories import AUDIT_VEHICLE, NORMAL_VEHICLE


class RecordingStore(MemoryLedgerStore):
    """MemoryLedgerStore that remembers every chain-hash write-back."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes: list[tuple[int, str]] = []

    def persist_chain_hash(self, trip_id: int, chain_hash: str) -> None:
        self.writes.append((trip_id, chain_hash))
        super().persist_chain_hash(trip_id, chain_hash)


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore(vehicles=[AUDIT_VEHICLE, NORMAL_VEHICLE])


@pytest.fixture
def gateway_store(monkeypatch) -> MemoryLedgerStore:
    """Fresh in-memory store wired into the gateway's module globals."""
    import main
    from tripchain.chain_service import TripChainService

    ledger = MemoryLedgerStore(vehicles=[AUDIT_VEHICLE, NORMAL_VEHICLE])
    monkeypatch.setattr(main, "store", ledger)
    monkeypatch.setattr(main, "chain_service", TripChainService(ledger, main.calculator))
    return ledger


@pytest.fixture
def client(gateway_store):
    from fastapi.testclient import TestClient

    import main

    with TestClient(main.app) as tc:
        yield tc
