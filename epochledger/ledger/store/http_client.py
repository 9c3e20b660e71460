"""HTTP client for the read-only ledger API.

Lets an auditor on another host read epochs and statements, and trigger
a verification, without database access.
"""

from __future__ import annotations

import asyncio
from typing import Any

import bittensor as bt
import httpx

from epochledger.ledger.models import Allocation, Epoch, PayoutStatement


class HTTPLedgerReader:
    """Remote counterpart of ``LedgerReader`` over ``LedgerHTTPServer``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)
        self._max_retries = max_retries

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str) -> httpx.Response:
        """Request with retry on transport failures."""
        for attempt in range(self._max_retries):
            try:
                return await self._client.request(method, f"{self.base_url}{path}")
            except httpx.TransportError as e:
                if attempt == self._max_retries - 1:
                    raise
                wait = 2 ** attempt
                bt.logging.warning({"ledger_http_client": {"retry": attempt, "wait": wait, "error": str(e)}})
                await asyncio.sleep(wait)
        raise ConnectionError("Max retries exceeded")

    async def _get_json(self, path: str) -> Any | None:
        resp = await self._request("GET", path)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def list_epochs(self) -> list[Epoch]:
        body = await self._get_json("/ledger/epochs")
        return [Epoch.model_validate(e) for e in body["epochs"]]

    async def get_epoch(self, epoch_id: int) -> Epoch | None:
        body = await self._get_json(f"/ledger/epochs/{epoch_id}")
        return Epoch.model_validate(body) if body is not None else None

    async def list_allocations(self, epoch_id: int) -> list[Allocation] | None:
        body = await self._get_json(f"/ledger/epochs/{epoch_id}/allocations")
        if body is None:
            return None
        return [Allocation.model_validate(a) for a in body["allocations"]]

    async def pool_total(self, epoch_id: int) -> int | None:
        body = await self._get_json(f"/ledger/epochs/{epoch_id}/pool")
        return body["total_credits"] if body is not None else None

    async def get_statement(self, epoch_id: int) -> tuple[PayoutStatement, list[str]] | None:
        """Current statement and the ids of its chain, oldest first."""
        body = await self._get_json(f"/ledger/epochs/{epoch_id}/statement")
        if body is None:
            return None
        return PayoutStatement.model_validate(body["statement"]), body["history"]

    async def verify(self, epoch_id: int) -> dict[str, Any] | None:
        resp = await self._request("POST", f"/ledger/epochs/{epoch_id}/verify")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()


__all__ = ["HTTPLedgerReader"]
