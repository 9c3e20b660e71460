"""Append-only store protocols.

Facts, pool components and payout statements expose put/get/list only;
no update or delete exists on these interfaces. Database triggers reject
such writes from anything that bypasses them.

Implementations: SqlLedgerStore (SQLite / PostgreSQL).
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from epochledger.ledger.models import (
    ActivityFact,
    NewActivityFact,
    PayoutStatement,
    PoolComponent,
    PoolComponentInput,
)


@runtime_checkable
class FactLog(Protocol):
    """Raw activity facts."""

    async def put_fact(self, fact: NewActivityFact, ingested_at: datetime) -> bool:
        """Insert a fact. Returns False if its id was already stored."""
        ...

    async def get_fact(self, fact_id: str) -> ActivityFact | None:
        ...

    async def list_facts_in_window(
        self, period_start: datetime, period_end: datetime,
    ) -> list[ActivityFact]:
        """Facts with ``period_start <= event_time < period_end``."""
        ...


@runtime_checkable
class PoolLog(Protocol):
    """Per-epoch budget components."""

    async def put_pool_component(
        self, epoch_id: int, component: PoolComponentInput, computed_at: datetime,
    ) -> bool:
        """Insert a component. Returns False if the type already exists."""
        ...

    async def list_pool_components(self, epoch_id: int) -> list[PoolComponent]:
        ...


@runtime_checkable
class StatementLog(Protocol):
    """Payout statements and their supersession chain."""

    async def put_statement(self, statement: PayoutStatement) -> None:
        ...

    async def list_statements(self, epoch_id: int) -> list[PayoutStatement]:
        """Statements for an epoch, oldest first."""
        ...


@runtime_checkable
class LedgerStore(FactLog, PoolLog, StatementLog, Protocol):
    """Everything a ledger service needs inside one transaction."""


__all__ = ["FactLog", "LedgerStore", "PoolLog", "StatementLog"]
