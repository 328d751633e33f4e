"""
Tripchain SDK: Client
Thin synchronous wrapper over the Tripchain integrity gateway.
"""

from __future__ import annotations

from typing import Any

import httpx

from tripchain_sdk.models import ChainStatus, ImportResult


class TripchainClient:
    """
    Client for the Tripchain integrity gateway.

    Keeps trip chains current after logbook edits, verifies vehicle
    chains and moves backup snapshots in and out.
    """

    def __init__(
        self,
        gateway_url: str,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ):
        """
        Args:
            gateway_url: Base URL of the gateway (e.g. "http://localhost:8000")
            timeout: HTTP request timeout in seconds
            http_client: Pre-built httpx client to use instead of a new one
        """
        self.gateway_url = gateway_url.rstrip("/")
        self._client = http_client or httpx.Client(timeout=timeout)

    def update_trip_chain(self, trip_id: int) -> int:
        """
        Recompute the chain of a trip's vehicle after an insert or update.

        Returns:
            Number of chain hashes the gateway rewrote (0 for unprotected trips).
        """
        resp = self._client.post(f"{self.gateway_url}/trips/{trip_id}/chain")
        resp.raise_for_status()
        return resp.json()["rewritten"]

    def verify_vehicle_chain(self, vehicle_id: int) -> ChainStatus:
        """Verify a vehicle's stored chain. Raises httpx.HTTPStatusError on 404."""
        resp = self._client.get(f"{self.gateway_url}/vehicles/{vehicle_id}/chain/verify")
        resp.raise_for_status()
        return ChainStatus(**resp.json())

    def export_backup(self) -> dict[str, Any]:
        """Fetch a full backup snapshot including its integrity hashes."""
        resp = self._client.get(f"{self.gateway_url}/backup/export")
        resp.raise_for_status()
        return resp.json()

    def import_backup(self, snapshot: dict[str, Any]) -> ImportResult:
        """
        Submit a backup snapshot for verification and restore.

        Integrity rejections (HTTP 409) are returned as an ImportResult with
        accepted=False rather than raised; other failures raise.
        """
        resp = self._client.post(f"{self.gateway_url}/backup/import", json=snapshot)
        body = resp.json()

        if resp.status_code == 409:
            return ImportResult(
                accepted=False,
                kind=body.get("kind"),
                error=body.get("error"),
                vehicle_ids=body.get("vehicle_ids", []),
                trip_id=body.get("trip_id"),
                raw=body,
            )
        resp.raise_for_status()
        return ImportResult(accepted=True, raw=body)

    def health(self) -> dict:
        """Check gateway health via GET /health."""
        resp = self._client.get(f"{self.gateway_url}/health")
        return resp.json()
