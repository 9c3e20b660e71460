"""Attribution and review of facts within an epoch.

Every mutating call checks the epoch is open and fails with
``EpochClosedError`` otherwise; the database triggers enforce the same
rule for any writer that skips this layer. Automated passes never
overwrite reviewer decisions (inclusion, weight override, note, final
units).
"""

from __future__ import annotations

from datetime import datetime, timezone

import bittensor as bt

from epochledger.database import Database
from epochledger.errors import (
    AllocationNotFoundError,
    EpochClosedError,
    EpochNotFoundError,
    FactNotFoundError,
    FactOutsideWindowError,
    IdentityConflictError,
)
from epochledger.ledger.allocations import compute_proposed_allocations
from epochledger.ledger.models import (
    ActivityFact,
    Allocation,
    CurationEntry,
    CurationSummary,
    Epoch,
    IdentityBinding,
)
from epochledger.ledger.store.sql import SqlLedgerStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def require_open_epoch(
    store: SqlLedgerStore, epoch_id: int, for_update: bool = False,
) -> Epoch:
    epoch = await store.get_epoch(epoch_id, for_update=for_update)
    if epoch is None:
        raise EpochNotFoundError(epoch_id)
    if not epoch.is_open:
        raise EpochClosedError(epoch_id)
    return epoch


async def resolve_subject(store: SqlLedgerStore, fact: ActivityFact) -> str | None:
    """Subject bound to the fact's platform identity, if any."""
    binding = await store.get_binding(fact.source, fact.platform_user_id)
    return binding.subject_id if binding else None


async def refresh_allocations_in(
    store: SqlLedgerStore, epoch: Epoch, now: datetime,
) -> list[Allocation]:
    """Recompute proposed units for an open epoch on an existing connection.

    Unresolved rows are first resolved against the current bindings.
    Reviewer-set final units and reasons survive. Subjects that lost all
    their facts keep a row with zero proposed units.
    """
    facts = {f.id: f for f in await store.list_facts_for_epoch(epoch.id)}
    for entry in await store.list_curation(epoch.id):
        if entry.subject_id is not None or entry.fact_id not in facts:
            continue
        subject_id = await resolve_subject(store, facts[entry.fact_id])
        if subject_id is not None:
            await store.update_curation(epoch.id, entry.fact_id, now, subject_id=subject_id)

    curation = await store.list_curation(epoch.id)
    proposed = compute_proposed_allocations(curation, facts, epoch.weight_policy)

    for allocation in proposed:
        await store.upsert_proposed(epoch.id, allocation, now)
    await store.zero_allocations_except(epoch.id, {a.subject_id for a in proposed}, now)
    return await store.list_allocations(epoch.id)


class CurationService:
    """Curation, identity resolution and allocation review for one scope."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    async def _assign(
        self, store: SqlLedgerStore, epoch: Epoch, fact_id: str, now: datetime,
    ) -> CurationEntry:
        fact = await store.get_fact(fact_id)
        if fact is None:
            raise FactNotFoundError(fact_id)
        if not epoch.contains(fact.event_time):
            raise FactOutsideWindowError(fact_id, epoch.id)

        subject_id = await resolve_subject(store, fact)
        await store.put_curation(epoch.id, fact_id, subject_id, now)
        entry = await store.get_curation(epoch.id, fact_id)
        if entry.subject_id is None and subject_id is not None:
            await store.update_curation(epoch.id, fact_id, now, subject_id=subject_id)
            entry = await store.get_curation(epoch.id, fact_id)
        return entry

    # -- Identity --

    async def bind_identity(
        self, provider: str, external_id: str, subject_id: str,
    ) -> IdentityBinding:
        """Bind a platform identity to a subject. Rebinding the same pair is a no-op."""
        binding = IdentityBinding(
            provider=provider,
            external_id=external_id,
            subject_id=subject_id,
            created_at=_utcnow(),
        )
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            if not await store.put_binding(binding):
                existing = await store.get_binding(provider, external_id)
                if existing.subject_id != subject_id:
                    raise IdentityConflictError(provider, external_id, existing.subject_id)
                binding = existing
        bt.logging.info({"identity_bind": {"provider": provider, "external_id": external_id, "subject_id": subject_id}})
        return binding

    async def resolve_identity(self, fact_id: str) -> str | None:
        """Resolve a fact to its subject, or None while unbound.

        A successful resolution is written onto the fact's unresolved
        curation row in the currently open epoch, if there is one.
        """
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            fact = await store.get_fact(fact_id)
            if fact is None:
                raise FactNotFoundError(fact_id)
            subject_id = await resolve_subject(store, fact)
            if subject_id is None:
                bt.logging.debug({"identity_resolve": {"fact_id": fact_id, "status": "unresolved"}})
                return None

            epoch = await store.find_open_epoch()
            if epoch is not None:
                entry = await store.get_curation(epoch.id, fact_id)
                if entry is not None and entry.subject_id is None:
                    await store.update_curation(epoch.id, fact_id, _utcnow(), subject_id=subject_id)
        return subject_id

    # -- Curation --

    async def assign_to_epoch(self, fact_id: str, epoch_id: int) -> CurationEntry:
        """Attach a fact to an epoch. Repeat calls return the existing entry."""
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await require_open_epoch(store, epoch_id)
            return await self._assign(store, epoch, fact_id, _utcnow())

    async def set_inclusion(
        self, epoch_id: int, fact_id: str, included: bool, reason: str | None = None,
    ) -> CurationEntry:
        now = _utcnow()
        values = {"included": included}
        if reason is not None:
            values["note"] = reason
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await require_open_epoch(store, epoch_id)
            await self._assign(store, epoch, fact_id, now)
            await store.update_curation(epoch_id, fact_id, now, **values)
            entry = await store.get_curation(epoch_id, fact_id)
        bt.logging.info({"curation_inclusion": {"epoch_id": epoch_id, "fact_id": fact_id, "included": included}})
        return entry

    async def set_weight_override(
        self,
        epoch_id: int,
        fact_id: str,
        weight_milli: int | None,
        reason: str | None = None,
    ) -> CurationEntry:
        """Override one fact's weight; ``None`` restores the policy weight."""
        if weight_milli is not None and weight_milli < 0:
            raise ValueError(f"weight_milli must be >= 0, got {weight_milli}")
        now = _utcnow()
        values = {"weight_override_milli": weight_milli}
        if reason is not None:
            values["note"] = reason
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await require_open_epoch(store, epoch_id)
            await self._assign(store, epoch, fact_id, now)
            await store.update_curation(epoch_id, fact_id, now, **values)
            entry = await store.get_curation(epoch_id, fact_id)
        bt.logging.info({"curation_override": {"epoch_id": epoch_id, "fact_id": fact_id, "weight_milli": weight_milli}})
        return entry

    async def curate_epoch(self, epoch_id: int) -> CurationSummary:
        """Assign every in-window fact and resolve what bindings now allow."""
        summary = CurationSummary()
        now = _utcnow()
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await require_open_epoch(store, epoch_id)
            facts = await store.list_facts_in_window(epoch.period_start, epoch.period_end)
            existing = {e.fact_id: e for e in await store.list_curation(epoch_id)}
            summary.total_facts = len(facts)

            for fact in facts:
                entry = existing.get(fact.id)
                if entry is not None and entry.subject_id is not None:
                    continue
                subject_id = await resolve_subject(store, fact)
                if entry is None:
                    await store.put_curation(epoch_id, fact.id, subject_id, now)
                    summary.new_entries += 1
                elif subject_id is not None:
                    await store.update_curation(epoch_id, fact.id, now, subject_id=subject_id)
                if subject_id is not None:
                    summary.resolved += 1
                else:
                    summary.unresolved += 1
                    bt.logging.debug({"curation_unresolved": {"fact_id": fact.id, "platform_user_id": fact.platform_user_id}})

        bt.logging.info({"curation_run": {"epoch_id": epoch_id, **summary.model_dump()}})
        return summary

    # -- Allocations --

    async def refresh_allocations(self, epoch_id: int) -> list[Allocation]:
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await require_open_epoch(store, epoch_id)
            allocations = await refresh_allocations_in(store, epoch, _utcnow())
        bt.logging.info({"allocation_refresh": {"epoch_id": epoch_id, "subjects": len(allocations)}})
        return allocations

    async def set_final_units(
        self,
        epoch_id: int,
        subject_id: str,
        units: int | None,
        reason: str | None = None,
    ) -> Allocation:
        """Set or clear (``None``) a reviewer's final unit total."""
        if units is not None and units < 0:
            raise ValueError(f"units must be >= 0, got {units}")
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            await require_open_epoch(store, epoch_id)
            updated = await store.set_final_units(epoch_id, subject_id, units, reason, _utcnow())
            if updated == 0:
                raise AllocationNotFoundError(epoch_id, subject_id)
            allocation = next(
                a for a in await store.list_allocations(epoch_id) if a.subject_id == subject_id
            )
        bt.logging.info({"allocation_override": {"epoch_id": epoch_id, "subject_id": subject_id, "final_units": units}})
        return allocation


__all__ = [
    "CurationService",
    "refresh_allocations_in",
    "require_open_epoch",
    "resolve_subject",
]
