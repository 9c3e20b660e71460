"""Independent recomputation of a closed epoch's payout.

Reads facts, curation decisions, pool components and allocations from the
store only; no source adapter is ever contacted. Every disagreement is
reported as a ``FieldDiff``; nothing is corrected.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import bittensor as bt

from epochledger.database import Database
from epochledger.errors import EpochNotFoundError
from epochledger.ledger.allocations import compute_proposed_allocations
from epochledger.ledger.hashing import compute_allocation_set_hash
from epochledger.ledger.models import (
    LEDGER_SCHEMA_VERSION,
    Allocation,
    Claim,
    PayoutLine,
    PayoutStatement,
)
from epochledger.ledger.payouts import compute_payouts
from epochledger.ledger.pool import sum_components
from epochledger.ledger.store.sql import SqlLedgerStore


@dataclass
class FieldDiff:
    """One field where the stored value disagrees with the recomputation."""

    field: str
    expected: Any
    actual: Any
    subject_id: str | None = None


@dataclass
class VerificationReport:
    """Outcome of verifying one epoch."""

    epoch_id: int
    matches: bool = True
    diffs: list[FieldDiff] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.matches

    def add(self, name: str, expected: Any, actual: Any, subject_id: str | None = None) -> None:
        self.diffs.append(FieldDiff(field=name, expected=expected, actual=actual, subject_id=subject_id))
        self.matches = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch_id": self.epoch_id,
            "matches": self.matches,
            "diffs": [asdict(d) for d in self.diffs],
        }


def _compare_lines(
    report: VerificationReport,
    prefix: str,
    expected: list[PayoutLine],
    actual: list[PayoutLine],
) -> None:
    want = {line.subject_id: line for line in expected}
    got = {line.subject_id: line for line in actual}
    for subject_id in sorted(set(want) | set(got)):
        w, g = want.get(subject_id), got.get(subject_id)
        if w is None or g is None:
            report.add(
                f"{prefix}.line",
                w.model_dump() if w else None,
                g.model_dump() if g else None,
                subject_id,
            )
            continue
        for name in ("total_units", "share", "amount_credits"):
            if getattr(w, name) != getattr(g, name):
                report.add(f"{prefix}.{name}", getattr(w, name), getattr(g, name), subject_id)
    if [line.subject_id for line in actual] != sorted(got):
        report.add(f"{prefix}.order", sorted(got), [line.subject_id for line in actual])


def _compare_statement(
    report: VerificationReport,
    prefix: str,
    statement: PayoutStatement,
    claims: list[Claim],
    pool_total: int,
) -> None:
    if statement.schema_version != LEDGER_SCHEMA_VERSION:
        report.add(f"{prefix}.schema_version", LEDGER_SCHEMA_VERSION, statement.schema_version)
    if statement.pool_total_credits != pool_total:
        report.add(f"{prefix}.pool_total_credits", pool_total, statement.pool_total_credits)
    expected_hash = compute_allocation_set_hash(claims)
    if statement.allocation_set_hash != expected_hash:
        report.add(f"{prefix}.allocation_set_hash", expected_hash, statement.allocation_set_hash)
    _compare_lines(report, f"{prefix}.payouts", compute_payouts(claims, pool_total), statement.payouts)


class EpochVerifier:
    """Replays allocation and payout computation for closed epochs."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    async def verify(self, epoch_id: int) -> VerificationReport:
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            epoch = await store.get_epoch(epoch_id)
            if epoch is None:
                raise EpochNotFoundError(epoch_id)
            components = await store.list_pool_components(epoch_id)
            curation = await store.list_curation(epoch_id)
            facts = {f.id: f for f in await store.list_facts_for_epoch(epoch_id)}
            allocations = await store.list_allocations(epoch_id)
            statements = await store.list_statements(epoch_id)

        report = VerificationReport(epoch_id=epoch_id)
        if epoch.is_open:
            report.add("epoch.status", "closed", epoch.status.value)
            return self._log(report)

        pool_total = sum_components(components)
        if epoch.pool_total_credits != pool_total:
            report.add("epoch.pool_total_credits", pool_total, epoch.pool_total_credits)

        # Allocations: recompute proposed units from facts and curation
        stored: dict[str, Allocation] = {a.subject_id: a for a in allocations}
        recomputed = {
            p.subject_id: p
            for p in compute_proposed_allocations(curation, facts, epoch.weight_policy)
        }
        claims: list[Claim] = []
        for subject_id in sorted(set(stored) | set(recomputed)):
            proposal = recomputed.get(subject_id)
            expected_units = proposal.proposed_units if proposal else 0
            expected_count = proposal.activity_count if proposal else 0
            allocation = stored.get(subject_id)
            if allocation is None:
                report.add("allocation.row", expected_units, None, subject_id)
                claims.append(Claim(subject_id=subject_id, units=expected_units))
                continue
            if allocation.proposed_units != expected_units:
                report.add("allocation.proposed_units", expected_units, allocation.proposed_units, subject_id)
            if allocation.activity_count != expected_count:
                report.add("allocation.activity_count", expected_count, allocation.activity_count, subject_id)
            units = allocation.final_units if allocation.final_units is not None else expected_units
            claims.append(Claim(subject_id=subject_id, units=units))

        # Closing statement against the recomputed claims
        if not statements:
            report.add("statement", "present", None)
            return self._log(report)
        _compare_statement(report, "statement", statements[0], claims, epoch.pool_total_credits or 0)

        # Corrections must be internally consistent
        for statement in statements[1:]:
            own_claims = [Claim(subject_id=p.subject_id, units=p.total_units) for p in statement.payouts]
            _compare_statement(
                report,
                f"correction[{statement.id}]",
                statement,
                own_claims,
                epoch.pool_total_credits or 0,
            )

        return self._log(report)

    @staticmethod
    def _log(report: VerificationReport) -> VerificationReport:
        if report.matches:
            bt.logging.info({"ledger_verify": {"epoch_id": report.epoch_id, "matches": True}})
        else:
            bt.logging.warning({
                "ledger_verify": {
                    "epoch_id": report.epoch_id,
                    "matches": False,
                    "diffs": [d.field for d in report.diffs],
                }
            })
        return report


__all__ = ["EpochVerifier", "FieldDiff", "VerificationReport"]
