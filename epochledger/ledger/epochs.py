"""Epoch lifecycle: open -> closed, nothing else.

``close_epoch`` is idempotent. The first call refreshes allocations,
computes the payout and, in one transaction, pins the pool total, flips
the status and writes the statement. Any later call, including one racing
the first, gets that same statement back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable
from uuid import uuid4

import bittensor as bt
from sqlalchemy.exc import IntegrityError

from epochledger.database import Database
from epochledger.errors import (
    EpochNotClosedError,
    EpochNotFoundError,
    OpenEpochExistsError,
    StatementNotFoundError,
)
from epochledger.ledger.allocations import claims_from_allocations
from epochledger.ledger.curation import refresh_allocations_in
from epochledger.ledger.hashing import compute_allocation_set_hash
from epochledger.ledger.models import (
    LEDGER_SCHEMA_VERSION,
    Claim,
    Epoch,
    PayoutStatement,
    WeightPolicy,
)
from epochledger.ledger.payouts import compute_payouts
from epochledger.ledger.pool import closing_pool_total
from epochledger.ledger.store.interface import StatementLog
from epochledger.ledger.store.sql import SqlLedgerStore


@dataclass
class OpenEpochResult:
    """Epoch for the requested window and whether this call created it."""

    epoch: Epoch
    created: bool


@dataclass
class CloseResult:
    """Closing statement and whether this call produced it."""

    statement: PayoutStatement
    created: bool


async def statement_chain(log: StatementLog, epoch_id: int) -> list[PayoutStatement]:
    """Statements of a closed epoch, closing one first. Never empty."""
    chain = await log.list_statements(epoch_id)
    if not chain:
        raise StatementNotFoundError(epoch_id)
    return chain


def build_statement(
    scope_id: str,
    epoch_id: int,
    claims: list[Claim],
    pool_total_credits: int,
    created_at: datetime,
    supersedes_statement_id: str | None = None,
    reason: str | None = None,
) -> PayoutStatement:
    return PayoutStatement(
        id=str(uuid4()),
        scope_id=scope_id,
        epoch_id=epoch_id,
        schema_version=LEDGER_SCHEMA_VERSION,
        allocation_set_hash=compute_allocation_set_hash(claims),
        pool_total_credits=pool_total_credits,
        payouts=compute_payouts(claims, pool_total_credits),
        supersedes_statement_id=supersedes_statement_id,
        reason=reason,
        created_at=created_at,
    )


def _check_window(period_start: datetime, period_end: datetime) -> None:
    if period_start.tzinfo is None or period_end.tzinfo is None:
        raise ValueError("period bounds must be timezone-aware")
    if period_end <= period_start:
        raise ValueError("period_end must be after period_start")


class EpochManager:
    """Opens, closes and corrects epochs for one scope."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    # -- Open --

    async def _find_for_window(
        self, period_start: datetime, period_end: datetime,
    ) -> tuple[Epoch | None, Epoch | None]:
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            return (
                await store.find_epoch_by_window(period_start, period_end),
                await store.find_open_epoch(),
            )

    def _existing(self, epoch: Epoch, weight_policy: WeightPolicy) -> OpenEpochResult:
        if epoch.weight_policy != weight_policy:
            bt.logging.warning({
                "epoch_open": {
                    "epoch_id": epoch.id,
                    "status": "weight_policy_drift",
                    "pinned_version": epoch.weight_policy.version,
                    "requested_version": weight_policy.version,
                }
            })
        return OpenEpochResult(epoch=epoch, created=False)

    async def open_epoch(
        self,
        period_start: datetime,
        period_end: datetime,
        weight_policy: WeightPolicy,
    ) -> OpenEpochResult:
        """Open an epoch, or return the existing one for the same window.

        Raises:
            OpenEpochExistsError: another window is open in this scope.
        """
        _check_window(period_start, period_end)
        period_start = period_start.astimezone(timezone.utc)
        period_end = period_end.astimezone(timezone.utc)

        try:
            async with self.database.transaction() as conn:
                store = SqlLedgerStore(conn, self.scope_id)
                existing = await store.find_epoch_by_window(period_start, period_end)
                if existing is not None:
                    return self._existing(existing, weight_policy)
                current = await store.find_open_epoch()
                if current is not None:
                    raise OpenEpochExistsError(self.scope_id, current.id)

                await store.insert_epoch(
                    period_start, period_end, weight_policy, datetime.now(timezone.utc),
                )
                epoch = await store.find_epoch_by_window(period_start, period_end)
        except IntegrityError:
            # Lost a race with a concurrent open.
            existing, current = await self._find_for_window(period_start, period_end)
            if existing is not None:
                return self._existing(existing, weight_policy)
            if current is not None:
                raise OpenEpochExistsError(self.scope_id, current.id) from None
            raise

        bt.logging.info({
            "epoch_open": {
                "epoch_id": epoch.id,
                "scope_id": self.scope_id,
                "period_start": epoch.period_start.isoformat(),
                "period_end": epoch.period_end.isoformat(),
                "weight_policy": epoch.weight_policy.version,
            }
        })
        return OpenEpochResult(epoch=epoch, created=True)

    # -- Close --

    async def _closing_statement(self, epoch_id: int) -> PayoutStatement:
        async with self.database.transaction() as conn:
            chain = await statement_chain(SqlLedgerStore(conn, self.scope_id), epoch_id)
        return chain[0]

    async def close_epoch(self, epoch_id: int) -> CloseResult:
        """Finalize an epoch. Safe to call any number of times.

        Raises:
            EpochNotFoundError: no such epoch in this scope.
            MissingBaseIssuanceError: no base_issuance component; nothing changes.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.database.transaction() as conn:
                store = SqlLedgerStore(conn, self.scope_id)
                epoch = await store.get_epoch(epoch_id, for_update=True)
                if epoch is None:
                    raise EpochNotFoundError(epoch_id)
                if not epoch.is_open:
                    chain = await statement_chain(store, epoch_id)
                    bt.logging.info({"epoch_close": {"epoch_id": epoch_id, "status": "already_closed"}})
                    return CloseResult(statement=chain[0], created=False)

                pool_total = await closing_pool_total(store, epoch_id)
                allocations = await refresh_allocations_in(store, epoch, now)
                claims = claims_from_allocations(allocations)
                statement = build_statement(self.scope_id, epoch_id, claims, pool_total, now)

                await store.mark_closed(epoch_id, pool_total, now)
                await store.put_statement(statement)
        except IntegrityError:
            # Another close committed first; its statement is authoritative.
            statement = await self._closing_statement(epoch_id)
            return CloseResult(statement=statement, created=False)

        bt.logging.info({
            "epoch_close": {
                "epoch_id": epoch_id,
                "status": "closed",
                "statement_id": statement.id,
                "pool_total_credits": pool_total,
                "subjects": len(statement.payouts),
                "allocation_set_hash": statement.allocation_set_hash[:16],
            }
        })
        return CloseResult(statement=statement, created=True)

    # -- Corrections --

    async def supersede_statement(
        self, epoch_id: int, claims: Iterable[Claim], reason: str,
    ) -> PayoutStatement:
        """Issue a corrected statement linked to the current one.

        The epoch's recorded pool total is reused; nothing already stored
        is modified.
        """
        if not reason:
            raise ValueError("a correction needs a reason")
        claims = sorted(claims, key=lambda c: c.subject_id)
        if sum(c.units for c in claims) <= 0:
            raise ValueError("a correction must claim a positive number of units")
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await store.get_epoch(epoch_id, for_update=True)
            if epoch is None:
                raise EpochNotFoundError(epoch_id)
            if epoch.is_open:
                raise EpochNotClosedError(epoch_id)
            chain = await statement_chain(store, epoch_id)

            statement = build_statement(
                self.scope_id,
                epoch_id,
                claims,
                epoch.pool_total_credits,
                datetime.now(timezone.utc),
                supersedes_statement_id=chain[-1].id,
                reason=reason,
            )
            await store.put_statement(statement)

        bt.logging.info({
            "statement_supersede": {
                "epoch_id": epoch_id,
                "statement_id": statement.id,
                "supersedes": statement.supersedes_statement_id,
            }
        })
        return statement

    async def statement_history(self, epoch_id: int) -> list[PayoutStatement]:
        """Closing statement followed by its corrections, oldest first."""
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            if await store.get_epoch(epoch_id) is None:
                raise EpochNotFoundError(epoch_id)
            return await store.list_statements(epoch_id)


__all__ = ["CloseResult", "EpochManager", "OpenEpochResult", "build_statement", "statement_chain"]
