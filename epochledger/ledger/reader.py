"""Read-only projections for API and CLI consumers."""

from __future__ import annotations

from epochledger.database import Database
from epochledger.errors import EpochNotFoundError
from epochledger.ledger.models import (
    ActivityFact,
    Allocation,
    CurationEntry,
    Epoch,
    PayoutStatement,
    PoolComponent,
)
from epochledger.ledger.store.sql import SqlLedgerStore


class LedgerReader:
    """Thin read layer. Every call is one short read transaction."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    async def list_epochs(self) -> list[Epoch]:
        async with self.database.transaction() as conn:
            return await SqlLedgerStore(conn, self.scope_id).list_epochs()

    async def get_epoch(self, epoch_id: int) -> Epoch:
        async with self.database.transaction() as conn:
            epoch = await SqlLedgerStore(conn, self.scope_id).get_epoch(epoch_id)
        if epoch is None:
            raise EpochNotFoundError(epoch_id)
        return epoch

    async def list_facts(self, epoch_id: int) -> list[ActivityFact]:
        """Facts inside the epoch's window, curated or not."""
        epoch = await self.get_epoch(epoch_id)
        async with self.database.transaction() as conn:
            return await SqlLedgerStore(conn, self.scope_id).list_facts_in_window(
                epoch.period_start, epoch.period_end,
            )

    async def list_curation(self, epoch_id: int) -> list[CurationEntry]:
        await self.get_epoch(epoch_id)
        async with self.database.transaction() as conn:
            return await SqlLedgerStore(conn, self.scope_id).list_curation(epoch_id)

    async def list_allocations(self, epoch_id: int) -> list[Allocation]:
        await self.get_epoch(epoch_id)
        async with self.database.transaction() as conn:
            return await SqlLedgerStore(conn, self.scope_id).list_allocations(epoch_id)

    async def list_pool_components(self, epoch_id: int) -> list[PoolComponent]:
        await self.get_epoch(epoch_id)
        async with self.database.transaction() as conn:
            return await SqlLedgerStore(conn, self.scope_id).list_pool_components(epoch_id)

    async def statement_history(self, epoch_id: int) -> list[PayoutStatement]:
        await self.get_epoch(epoch_id)
        async with self.database.transaction() as conn:
            return await SqlLedgerStore(conn, self.scope_id).list_statements(epoch_id)

    async def get_statement(self, epoch_id: int) -> PayoutStatement | None:
        """Current statement: the newest correction, else the closing one."""
        history = await self.statement_history(epoch_id)
        return history[-1] if history else None


__all__ = ["LedgerReader"]
