"""SQL-backed ledger store bound to one connection and one scope.

Every method runs on the caller's connection, so a service can compose
several calls into one atomic transaction. Idempotent inserts use
``ON CONFLICT DO NOTHING`` and report whether a row was written.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection

from epochledger.database.schema import (
    ActivityFactRow,
    AllocationRow,
    CurationRow,
    EpochRow,
    IdentityBindingRow,
    PayoutStatementRow,
    PoolComponentRow,
    SourceCursorRow,
)
from epochledger.ledger.models import (
    ActivityFact,
    Allocation,
    CurationEntry,
    Epoch,
    EpochStatus,
    IdentityBinding,
    NewActivityFact,
    PayoutLine,
    PayoutStatement,
    PoolComponent,
    PoolComponentInput,
    ProposedAllocation,
    SourceCursor,
    WeightPolicy,
)

facts_t = ActivityFactRow.__table__
bindings_t = IdentityBindingRow.__table__
epochs_t = EpochRow.__table__
curation_t = CurationRow.__table__
allocations_t = AllocationRow.__table__
pool_t = PoolComponentRow.__table__
statements_t = PayoutStatementRow.__table__
cursors_t = SourceCursorRow.__table__


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _fact(row: Any) -> ActivityFact:
    return ActivityFact.model_validate(dict(row))


def _epoch(row: Any) -> Epoch:
    data = dict(row)
    data["weight_policy"] = WeightPolicy.model_validate(data["weight_policy"])
    return Epoch.model_validate(data)


def _statement(row: Any) -> PayoutStatement:
    data = dict(row)
    data["payouts"] = [PayoutLine.model_validate(p) for p in data["payouts"]]
    return PayoutStatement.model_validate(data)


def order_statement_chain(statements: Iterable[PayoutStatement]) -> list[PayoutStatement]:
    """Closing statement first, then each successor in turn."""
    by_predecessor = {s.supersedes_statement_id: s for s in statements}
    chain: list[PayoutStatement] = []
    current = by_predecessor.get(None)
    while current is not None:
        chain.append(current)
        current = by_predecessor.get(current.id)
    return chain


class SqlLedgerStore:
    """Ledger persistence for one scope over one open connection."""

    def __init__(self, conn: AsyncConnection, scope_id: str):
        self.conn = conn
        self.scope_id = scope_id

    def _insert(self, table):
        if self.conn.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    async def _fetch_one(self, query) -> Any | None:
        result = await self.conn.execute(query)
        return result.mappings().first()

    async def _fetch_all(self, query) -> list[Any]:
        result = await self.conn.execute(query)
        return list(result.mappings().all())

    # -- Facts --

    async def put_fact(self, fact: NewActivityFact, ingested_at: datetime) -> bool:
        stmt = self._insert(facts_t).values(
            scope_id=self.scope_id,
            ingested_at=ingested_at,
            **fact.model_dump(),
        ).on_conflict_do_nothing(index_elements=["scope_id", "id"])
        result = await self.conn.execute(stmt)
        return result.rowcount == 1

    async def get_fact(self, fact_id: str) -> ActivityFact | None:
        row = await self._fetch_one(
            select(facts_t).where(
                facts_t.c.scope_id == self.scope_id, facts_t.c.id == fact_id,
            )
        )
        return _fact(row) if row else None

    async def list_facts_in_window(
        self, period_start: datetime, period_end: datetime,
    ) -> list[ActivityFact]:
        rows = await self._fetch_all(
            select(facts_t)
            .where(
                facts_t.c.scope_id == self.scope_id,
                facts_t.c.event_time >= period_start,
                facts_t.c.event_time < period_end,
            )
            .order_by(facts_t.c.event_time, facts_t.c.id)
        )
        return [_fact(r) for r in rows]

    async def list_facts_for_epoch(self, epoch_id: int) -> list[ActivityFact]:
        """Facts that have a curation row in this epoch."""
        rows = await self._fetch_all(
            select(facts_t)
            .join(
                curation_t,
                and_(
                    curation_t.c.scope_id == facts_t.c.scope_id,
                    curation_t.c.fact_id == facts_t.c.id,
                ),
            )
            .where(
                facts_t.c.scope_id == self.scope_id,
                curation_t.c.epoch_id == epoch_id,
            )
            .order_by(facts_t.c.id)
        )
        return [_fact(r) for r in rows]

    # -- Identity bindings --

    async def get_binding(self, provider: str, external_id: str) -> IdentityBinding | None:
        row = await self._fetch_one(
            select(bindings_t).where(
                bindings_t.c.scope_id == self.scope_id,
                bindings_t.c.provider == provider,
                bindings_t.c.external_id == external_id,
            )
        )
        return IdentityBinding.model_validate(dict(row)) if row else None

    async def put_binding(self, binding: IdentityBinding) -> bool:
        stmt = self._insert(bindings_t).values(
            scope_id=self.scope_id, **binding.model_dump(),
        ).on_conflict_do_nothing(index_elements=["scope_id", "provider", "external_id"])
        result = await self.conn.execute(stmt)
        return result.rowcount == 1

    # -- Epochs --

    async def insert_epoch(
        self,
        period_start: datetime,
        period_end: datetime,
        weight_policy: WeightPolicy,
        opened_at: datetime,
    ) -> None:
        await self.conn.execute(
            epochs_t.insert().values(
                scope_id=self.scope_id,
                status=EpochStatus.OPEN.value,
                period_start=period_start,
                period_end=period_end,
                weight_policy=weight_policy.model_dump(mode="json"),
                opened_at=opened_at,
            )
        )

    async def get_epoch(self, epoch_id: int, for_update: bool = False) -> Epoch | None:
        query = select(epochs_t).where(
            epochs_t.c.scope_id == self.scope_id, epochs_t.c.id == epoch_id,
        )
        if for_update:
            # Rendered on PostgreSQL only; SQLite already holds the write lock.
            query = query.with_for_update()
        row = await self._fetch_one(query)
        return _epoch(row) if row else None

    async def find_epoch_by_window(
        self, period_start: datetime, period_end: datetime,
    ) -> Epoch | None:
        row = await self._fetch_one(
            select(epochs_t).where(
                epochs_t.c.scope_id == self.scope_id,
                epochs_t.c.period_start == period_start,
                epochs_t.c.period_end == period_end,
            )
        )
        return _epoch(row) if row else None

    async def find_open_epoch(self) -> Epoch | None:
        row = await self._fetch_one(
            select(epochs_t).where(
                epochs_t.c.scope_id == self.scope_id,
                epochs_t.c.status == EpochStatus.OPEN.value,
            )
        )
        return _epoch(row) if row else None

    async def list_epochs(self) -> list[Epoch]:
        rows = await self._fetch_all(
            select(epochs_t)
            .where(epochs_t.c.scope_id == self.scope_id)
            .order_by(epochs_t.c.period_start, epochs_t.c.id)
        )
        return [_epoch(r) for r in rows]

    async def mark_closed(
        self, epoch_id: int, pool_total_credits: int, closed_at: datetime,
    ) -> None:
        await self.conn.execute(
            update(epochs_t)
            .where(
                epochs_t.c.scope_id == self.scope_id,
                epochs_t.c.id == epoch_id,
                epochs_t.c.status == EpochStatus.OPEN.value,
            )
            .values(
                status=EpochStatus.CLOSED.value,
                pool_total_credits=pool_total_credits,
                closed_at=closed_at,
            )
        )

    # -- Curation --

    async def put_curation(
        self,
        epoch_id: int,
        fact_id: str,
        subject_id: str | None,
        now: datetime,
    ) -> bool:
        stmt = self._insert(curation_t).values(
            scope_id=self.scope_id,
            epoch_id=epoch_id,
            fact_id=fact_id,
            subject_id=subject_id,
            included=True,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["epoch_id", "fact_id"])
        result = await self.conn.execute(stmt)
        return result.rowcount == 1

    async def get_curation(self, epoch_id: int, fact_id: str) -> CurationEntry | None:
        row = await self._fetch_one(
            select(curation_t).where(
                curation_t.c.scope_id == self.scope_id,
                curation_t.c.epoch_id == epoch_id,
                curation_t.c.fact_id == fact_id,
            )
        )
        return CurationEntry.model_validate(dict(row)) if row else None

    async def list_curation(self, epoch_id: int) -> list[CurationEntry]:
        rows = await self._fetch_all(
            select(curation_t)
            .where(
                curation_t.c.scope_id == self.scope_id,
                curation_t.c.epoch_id == epoch_id,
            )
            .order_by(curation_t.c.fact_id)
        )
        return [CurationEntry.model_validate(dict(r)) for r in rows]

    async def update_curation(
        self, epoch_id: int, fact_id: str, now: datetime, **values: Any,
    ) -> int:
        result = await self.conn.execute(
            update(curation_t)
            .where(
                curation_t.c.scope_id == self.scope_id,
                curation_t.c.epoch_id == epoch_id,
                curation_t.c.fact_id == fact_id,
            )
            .values(updated_at=now, **values)
        )
        return result.rowcount

    # -- Allocations --

    async def list_allocations(self, epoch_id: int) -> list[Allocation]:
        rows = await self._fetch_all(
            select(allocations_t)
            .where(
                allocations_t.c.scope_id == self.scope_id,
                allocations_t.c.epoch_id == epoch_id,
            )
            .order_by(allocations_t.c.subject_id)
        )
        return [Allocation.model_validate(dict(r)) for r in rows]

    async def upsert_proposed(
        self, epoch_id: int, proposed: ProposedAllocation, now: datetime,
    ) -> None:
        """Write proposed units and counts; reviewer fields are left alone."""
        stmt = self._insert(allocations_t).values(
            scope_id=self.scope_id,
            epoch_id=epoch_id,
            subject_id=proposed.subject_id,
            proposed_units=proposed.proposed_units,
            activity_count=proposed.activity_count,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["epoch_id", "subject_id"],
            set_={
                "proposed_units": stmt.excluded.proposed_units,
                "activity_count": stmt.excluded.activity_count,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.conn.execute(stmt)

    async def zero_allocations_except(
        self, epoch_id: int, keep: set[str], now: datetime,
    ) -> int:
        """Zero proposed units for subjects no longer backed by any fact."""
        query = update(allocations_t).where(
            allocations_t.c.scope_id == self.scope_id,
            allocations_t.c.epoch_id == epoch_id,
        )
        if keep:
            query = query.where(allocations_t.c.subject_id.not_in(sorted(keep)))
        result = await self.conn.execute(
            query.values(proposed_units=0, activity_count=0, updated_at=now)
        )
        return result.rowcount

    async def set_final_units(
        self,
        epoch_id: int,
        subject_id: str,
        final_units: int | None,
        reason: str | None,
        now: datetime,
    ) -> int:
        result = await self.conn.execute(
            update(allocations_t)
            .where(
                allocations_t.c.scope_id == self.scope_id,
                allocations_t.c.epoch_id == epoch_id,
                allocations_t.c.subject_id == subject_id,
            )
            .values(final_units=final_units, override_reason=reason, updated_at=now)
        )
        return result.rowcount

    # -- Pool components --

    async def put_pool_component(
        self, epoch_id: int, component: PoolComponentInput, computed_at: datetime,
    ) -> bool:
        stmt = self._insert(pool_t).values(
            scope_id=self.scope_id,
            epoch_id=epoch_id,
            computed_at=computed_at,
            **component.model_dump(mode="json"),
        ).on_conflict_do_nothing(index_elements=["epoch_id", "component_type"])
        result = await self.conn.execute(stmt)
        return result.rowcount == 1

    async def list_pool_components(self, epoch_id: int) -> list[PoolComponent]:
        rows = await self._fetch_all(
            select(pool_t)
            .where(pool_t.c.scope_id == self.scope_id, pool_t.c.epoch_id == epoch_id)
            .order_by(pool_t.c.component_type)
        )
        return [PoolComponent.model_validate(dict(r)) for r in rows]

    # -- Statements --

    async def put_statement(self, statement: PayoutStatement) -> None:
        data = statement.model_dump(mode="json")
        data["created_at"] = statement.created_at
        data["scope_id"] = self.scope_id
        await self.conn.execute(statements_t.insert().values(**data))

    async def list_statements(self, epoch_id: int) -> list[PayoutStatement]:
        rows = await self._fetch_all(
            select(statements_t).where(
                statements_t.c.scope_id == self.scope_id,
                statements_t.c.epoch_id == epoch_id,
            )
        )
        return order_statement_chain(_statement(r) for r in rows)

    # -- Source cursors --

    async def get_cursor(
        self, source: str, stream: str, source_ref: str,
    ) -> SourceCursor | None:
        row = await self._fetch_one(
            select(cursors_t).where(
                cursors_t.c.scope_id == self.scope_id,
                cursors_t.c.source == source,
                cursors_t.c.stream == stream,
                cursors_t.c.source_ref == source_ref,
            )
        )
        return SourceCursor.model_validate(dict(row)) if row else None

    async def put_cursor(self, cursor: SourceCursor) -> None:
        stmt = self._insert(cursors_t).values(**cursor.model_dump())
        stmt = stmt.on_conflict_do_update(
            index_elements=["scope_id", "source", "stream", "source_ref"],
            set_={
                "cursor_value": stmt.excluded.cursor_value,
                "retrieved_at": stmt.excluded.retrieved_at,
            },
        )
        await self.conn.execute(stmt)


__all__ = ["SqlLedgerStore", "order_statement_chain"]
