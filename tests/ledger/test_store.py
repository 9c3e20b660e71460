"""Tests for the SQL store, its protocols and epoch-pinned weights."""

from datetime import datetime, timezone

import pytest

from epochledger.errors import EpochNotFoundError, MissingBaseIssuanceError, StatementNotFoundError
from epochledger.ledger.epochs import statement_chain
from epochledger.ledger.facts import append_facts
from epochledger.ledger.models import PayoutStatement, PoolComponent, PoolComponentInput, WeightPolicy
from epochledger.ledger.pool import closing_pool_total
from epochledger.ledger.store.interface import FactLog, LedgerStore, PoolLog, StatementLog
from epochledger.ledger.store.sql import SqlLedgerStore, order_statement_chain
from epochledger.ledger.weights import units_for, weight_for

SCOPE = "test-scope"
CREATED = datetime(2026, 1, 8, tzinfo=timezone.utc)


def _statement(statement_id, supersedes=None) -> PayoutStatement:
    return PayoutStatement(
        id=statement_id,
        scope_id=SCOPE,
        epoch_id=1,
        allocation_set_hash="0" * 64,
        pool_total_credits=0,
        supersedes_statement_id=supersedes,
        created_at=CREATED,
    )


class TestProtocols:

    @pytest.mark.asyncio
    async def test_sql_store_satisfies_protocols(self, database):
        async with database.transaction() as conn:
            store = SqlLedgerStore(conn, SCOPE)
            for protocol in (FactLog, PoolLog, StatementLog, LedgerStore):
                assert isinstance(store, protocol)

    def test_append_only_logs_expose_no_mutation(self):
        for protocol in (FactLog, PoolLog, StatementLog):
            names = [n for n in vars(protocol) if not n.startswith("_")]
            assert not [n for n in names if n.startswith(("update", "delete", "set_"))]


class _MemoryLogs:
    """Facts, pool components and statements kept in dicts."""

    def __init__(self):
        self.facts = {}
        self.components = {}
        self.statements = []

    async def put_fact(self, fact, ingested_at):
        if fact.id in self.facts:
            return False
        self.facts[fact.id] = fact
        return True

    async def get_fact(self, fact_id):
        return self.facts.get(fact_id)

    async def list_facts_in_window(self, period_start, period_end):
        return [f for f in self.facts.values() if period_start <= f.event_time < period_end]

    async def put_pool_component(self, epoch_id, component, computed_at):
        key = (epoch_id, component.component_type)
        if key in self.components:
            return False
        self.components[key] = PoolComponent(
            scope_id=SCOPE, epoch_id=epoch_id, computed_at=computed_at, **component.model_dump(),
        )
        return True

    async def list_pool_components(self, epoch_id):
        return [c for (e, _), c in self.components.items() if e == epoch_id]

    async def put_statement(self, statement):
        self.statements.append(statement)

    async def list_statements(self, epoch_id):
        return order_statement_chain(s for s in self.statements if s.epoch_id == epoch_id)


class TestLogHelpers:

    def test_memory_logs_satisfy_protocols(self):
        assert isinstance(_MemoryLogs(), LedgerStore)

    @pytest.mark.asyncio
    async def test_append_facts_counts_known_ids(self, make_fact):
        logs = _MemoryLogs()
        first = await append_facts(logs, [make_fact(1), make_fact(2)], CREATED)
        again = await append_facts(logs, [make_fact(2), make_fact(3)], CREATED)
        assert (first.inserted, first.skipped) == (2, 0)
        assert (again.inserted, again.skipped) == (1, 1)
        assert len(logs.facts) == 3

    @pytest.mark.asyncio
    async def test_closing_pool_total_needs_base_issuance(self, base_issuance):
        logs = _MemoryLogs()
        bonus = PoolComponentInput(
            component_type="bonus", algorithm_version="v1", inputs={}, amount_credits=7,
        )
        await logs.put_pool_component(1, bonus, CREATED)
        with pytest.raises(MissingBaseIssuanceError):
            await closing_pool_total(logs, 1)

        await logs.put_pool_component(1, base_issuance(93), CREATED)
        assert await closing_pool_total(logs, 1) == 100

    @pytest.mark.asyncio
    async def test_statement_chain(self):
        logs = _MemoryLogs()
        with pytest.raises(StatementNotFoundError):
            await statement_chain(logs, 1)
        await logs.put_statement(_statement("b", supersedes="a"))
        await logs.put_statement(_statement("a"))
        assert [s.id for s in await statement_chain(logs, 1)] == ["a", "b"]


class TestOrderStatementChain:

    def test_follows_links_not_input_order(self):
        chain = order_statement_chain([
            _statement("c", supersedes="b"),
            _statement("a"),
            _statement("b", supersedes="a"),
        ])
        assert [s.id for s in chain] == ["a", "b", "c"]

    def test_empty(self):
        assert order_statement_chain([]) == []


class TestScopeIsolation:

    @pytest.mark.asyncio
    async def test_other_scope_sees_nothing(self, ledger, populated_epoch, database):
        async with database.transaction() as conn:
            other = SqlLedgerStore(conn, "other-scope")
            assert await other.get_epoch(populated_epoch.id) is None
            assert await other.list_epochs() == []
            assert await other.list_curation(populated_epoch.id) == []


class TestWeights:

    def test_override_wins(self, policy):
        assert units_for(policy, "pr_merged") == 1000
        assert units_for(policy, "pr_merged", 0) == 0
        assert units_for(policy, "unknown", 42) == 42

    @pytest.mark.asyncio
    async def test_weight_comes_from_pinned_policy(self, ledger, open_epoch, database):
        assert await weight_for(database, SCOPE, open_epoch.id, "review_submitted") == 500
        assert await weight_for(database, SCOPE, open_epoch.id, "emoji_reaction") == 0

        # Reopening with a different policy leaves the pinned one in force.
        changed = WeightPolicy(version="v2", weights={"review_submitted": 9})
        await ledger.epochs.open_epoch(open_epoch.period_start, open_epoch.period_end, changed)
        assert await weight_for(database, SCOPE, open_epoch.id, "review_submitted") == 500

    @pytest.mark.asyncio
    async def test_unknown_epoch(self, database):
        with pytest.raises(EpochNotFoundError):
            await weight_for(database, SCOPE, 77, "pr_merged")
