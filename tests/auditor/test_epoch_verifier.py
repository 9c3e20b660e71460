"""Tests for independent payout verification.

Tampering tests drop the relevant guard trigger first; the guards
otherwise make these edits impossible.
"""

import pytest
from sqlalchemy import text

from epochledger.errors import EpochNotFoundError
from epochledger.ledger.models import Claim


def _fields(report) -> set[str]:
    return {d.field for d in report.diffs}


async def _drop_trigger(database, name: str) -> None:
    await database.write(text(f"DROP TRIGGER {name}"))


class TestEpochVerifier:

    @pytest.mark.asyncio
    async def test_untouched_epoch_matches(self, ledger, populated_epoch):
        await ledger.epochs.close_epoch(populated_epoch.id)
        report = await ledger.verifier.verify(populated_epoch.id)
        assert report
        assert report.diffs == []
        assert report.to_dict() == {"epoch_id": populated_epoch.id, "matches": True, "diffs": []}

    @pytest.mark.asyncio
    async def test_final_units_and_exclusions_match(self, ledger, populated_epoch, make_fact):
        await ledger.curation.set_inclusion(populated_epoch.id, make_fact(1).id, False, "duplicate")
        await ledger.curation.refresh_allocations(populated_epoch.id)
        await ledger.curation.set_final_units(populated_epoch.id, "bob", 3000, "mentoring")
        await ledger.epochs.close_epoch(populated_epoch.id)
        assert (await ledger.verifier.verify(populated_epoch.id)).matches

    @pytest.mark.asyncio
    async def test_corrections_are_checked(self, ledger, populated_epoch):
        await ledger.epochs.close_epoch(populated_epoch.id)
        await ledger.epochs.supersede_statement(
            populated_epoch.id, [Claim(subject_id="alice", units=3), Claim(subject_id="bob", units=1)], "recount",
        )
        assert (await ledger.verifier.verify(populated_epoch.id)).matches

    @pytest.mark.asyncio
    async def test_open_epoch_reports_status(self, ledger, populated_epoch):
        report = await ledger.verifier.verify(populated_epoch.id)
        assert not report
        assert _fields(report) == {"epoch.status"}

    @pytest.mark.asyncio
    async def test_unknown_epoch(self, ledger):
        with pytest.raises(EpochNotFoundError):
            await ledger.verifier.verify(31)

    @pytest.mark.asyncio
    async def test_tampered_allocation_detected(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        await _drop_trigger(database, "epoch_allocations_closed_update")
        await database.write(text("UPDATE epoch_allocations SET proposed_units = 1 WHERE subject_id = 'bob'"))

        report = await ledger.verifier.verify(populated_epoch.id)
        assert not report.matches
        diff = next(d for d in report.diffs if d.field == "allocation.proposed_units")
        assert (diff.subject_id, diff.expected, diff.actual) == ("bob", 500, 1)

    @pytest.mark.asyncio
    async def test_tampered_fact_detected(self, ledger, populated_epoch, make_fact, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        await _drop_trigger(database, "activity_facts_no_update")
        await database.write(
            text("UPDATE activity_facts SET category = 'issue_closed' WHERE id = :id"),
            {"id": make_fact(1).id},
        )

        report = await ledger.verifier.verify(populated_epoch.id)
        fields = _fields(report)
        assert "allocation.proposed_units" in fields
        assert "statement.allocation_set_hash" in fields
        assert "statement.payouts.amount_credits" in fields

    @pytest.mark.asyncio
    async def test_tampered_pool_detected(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        await _drop_trigger(database, "epoch_pool_components_no_update")
        await database.write(text("UPDATE epoch_pool_components SET amount_credits = 150"))

        report = await ledger.verifier.verify(populated_epoch.id)
        diff = next(d for d in report.diffs if d.field == "epoch.pool_total_credits")
        assert (diff.expected, diff.actual) == (150, 100)

    @pytest.mark.asyncio
    async def test_tampered_statement_detected(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        await _drop_trigger(database, "payout_statements_no_update")
        await database.write(text("UPDATE payout_statements SET pool_total_credits = 999"))

        report = await ledger.verifier.verify(populated_epoch.id)
        assert "statement.pool_total_credits" in _fields(report)
