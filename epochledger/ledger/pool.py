"""Pool aggregation: immutable components summed on demand."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

import bittensor as bt

from epochledger.database import Database
from epochledger.errors import DuplicatePoolComponentError, EpochNotFoundError, MissingBaseIssuanceError
from epochledger.ledger.curation import require_open_epoch
from epochledger.ledger.models import BASE_ISSUANCE, PoolComponent, PoolComponentInput
from epochledger.ledger.store.interface import PoolLog
from epochledger.ledger.store.sql import SqlLedgerStore


def sum_components(components: Iterable[PoolComponent]) -> int:
    return sum(c.amount_credits for c in components)


def has_base_issuance(components: Iterable[PoolComponent]) -> bool:
    return any(c.component_type == BASE_ISSUANCE for c in components)


async def closing_pool_total(log: PoolLog, epoch_id: int) -> int:
    """Total to pin at close. Fails without a base issuance component."""
    components = await log.list_pool_components(epoch_id)
    if not has_base_issuance(components):
        bt.logging.error({"pool_total": {"epoch_id": epoch_id, "error": MissingBaseIssuanceError.code}})
        raise MissingBaseIssuanceError(epoch_id)
    return sum_components(components)


class PoolAggregator:
    """Records pool components and totals them. No computation of its own."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    async def record_component(
        self, epoch_id: int, component: PoolComponentInput,
    ) -> PoolComponent:
        """Record a component. A second component of the same type is rejected."""
        computed_at = datetime.now(timezone.utc)
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            await require_open_epoch(store, epoch_id)
            if not await store.put_pool_component(epoch_id, component, computed_at):
                raise DuplicatePoolComponentError(epoch_id, component.component_type)

        bt.logging.info({
            "pool_component": {
                "epoch_id": epoch_id,
                "component_type": component.component_type,
                "amount_credits": component.amount_credits,
            }
        })
        return PoolComponent(
            scope_id=self.scope_id,
            epoch_id=epoch_id,
            computed_at=computed_at,
            **component.model_dump(),
        )

    async def list_components(self, epoch_id: int) -> list[PoolComponent]:
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            if await store.get_epoch(epoch_id) is None:
                raise EpochNotFoundError(epoch_id)
            return await store.list_pool_components(epoch_id)

    async def total_for(self, epoch_id: int) -> int:
        """Literal sum of the epoch's component rows."""
        return sum_components(await self.list_components(epoch_id))


__all__ = ["PoolAggregator", "closing_pool_total", "has_base_issuance", "sum_components"]
