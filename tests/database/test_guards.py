"""Tests for the storage-level write guards.

Writes here go around the services on purpose, straight to SQL, to show
the database itself refuses them.
"""

import pytest
from sqlalchemy import text

from epochledger.database.schema.guards import POSTGRES_GUARDS, POSTGRES_TRIGGERS
from epochledger.errors import EpochClosedError, ImmutableRecordError

SCOPE = "test-scope"
NOW = "2026-01-02 00:00:00"


class TestAppendOnlyTables:

    @pytest.mark.asyncio
    async def test_fact_update_rejected(self, ledger, make_fact, database):
        await ledger.facts.ingest(make_fact(1))
        with pytest.raises(ImmutableRecordError) as exc:
            await database.write(text("UPDATE activity_facts SET category = 'issue_closed'"))
        assert exc.value.table == "activity_facts"

    @pytest.mark.asyncio
    async def test_fact_delete_rejected(self, ledger, make_fact, database):
        await ledger.facts.ingest(make_fact(1))
        with pytest.raises(ImmutableRecordError):
            await database.write(text("DELETE FROM activity_facts"))
        rows = await database.read(text("SELECT COUNT(*) FROM activity_facts"))
        assert rows[0][0] == 1

    @pytest.mark.asyncio
    async def test_pool_component_update_rejected(self, ledger, open_epoch, base_issuance, database):
        await ledger.pool.record_component(open_epoch.id, base_issuance(100))
        with pytest.raises(ImmutableRecordError) as exc:
            await database.write(text("UPDATE epoch_pool_components SET amount_credits = 1"))
        assert exc.value.table == "epoch_pool_components"

    @pytest.mark.asyncio
    async def test_statement_update_rejected(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        with pytest.raises(ImmutableRecordError):
            await database.write(text("UPDATE payout_statements SET pool_total_credits = 999"))
        with pytest.raises(ImmutableRecordError):
            await database.write(text("DELETE FROM payout_statements"))


class TestEpochRow:

    @pytest.mark.asyncio
    async def test_pinned_policy_cannot_change(self, open_epoch, database):
        with pytest.raises(ImmutableRecordError) as exc:
            await database.write(
                text("UPDATE epochs SET weight_policy = :policy WHERE id = :id"),
                {"policy": '{"version": "v9", "weights": {}}', "id": open_epoch.id},
            )
        assert exc.value.table == "epochs"

    @pytest.mark.asyncio
    async def test_status_flip_needs_pool_total(self, open_epoch, database):
        with pytest.raises(ImmutableRecordError):
            await database.write(text("UPDATE epochs SET status = 'closed' WHERE id = :id"), {"id": open_epoch.id})

    @pytest.mark.asyncio
    async def test_epochs_cannot_be_deleted(self, open_epoch, database):
        with pytest.raises(ImmutableRecordError):
            await database.write(text("DELETE FROM epochs"))

    @pytest.mark.asyncio
    async def test_closed_epoch_frozen(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        with pytest.raises(EpochClosedError) as exc:
            await database.write(
                text("UPDATE epochs SET pool_total_credits = 1 WHERE id = :id"), {"id": populated_epoch.id},
            )
        assert exc.value.table == "epochs"


class TestClosedEpochRows:

    @pytest.mark.asyncio
    async def test_curation_frozen(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        with pytest.raises(EpochClosedError) as exc:
            await database.write(text("UPDATE activity_curation SET included = 0"))
        assert exc.value.table == "activity_curation"
        with pytest.raises(EpochClosedError):
            await database.write(text("DELETE FROM activity_curation"))

    @pytest.mark.asyncio
    async def test_allocations_frozen(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        with pytest.raises(EpochClosedError) as exc:
            await database.write(text("UPDATE epoch_allocations SET final_units = 0"))
        assert exc.value.table == "epoch_allocations"

    @pytest.mark.asyncio
    async def test_curation_insert_rejected(self, ledger, populated_epoch, make_fact, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        late = make_fact(50)
        await ledger.facts.ingest(late)
        with pytest.raises(EpochClosedError) as exc:
            await database.write(
                text(
                    "INSERT INTO activity_curation "
                    "(scope_id, epoch_id, fact_id, included, created_at, updated_at) "
                    "VALUES (:scope, :epoch_id, :fact_id, 1, :now, :now)"
                ),
                {"scope": SCOPE, "epoch_id": populated_epoch.id, "fact_id": late.id, "now": NOW},
            )
        assert exc.value.table == "activity_curation"

    @pytest.mark.asyncio
    async def test_pool_component_insert_rejected(self, ledger, populated_epoch, database):
        await ledger.epochs.close_epoch(populated_epoch.id)
        with pytest.raises(EpochClosedError) as exc:
            await database.write(
                text(
                    "INSERT INTO epoch_pool_components "
                    "(scope_id, epoch_id, component_type, algorithm_version, inputs, amount_credits, computed_at) "
                    "VALUES (:scope, :epoch_id, 'bonus', 'v1', '{}', 5, :now)"
                ),
                {"scope": SCOPE, "epoch_id": populated_epoch.id, "now": NOW},
            )
        assert exc.value.table == "epoch_pool_components"
        total = await database.read(
            text("SELECT COUNT(*) FROM epoch_pool_components WHERE component_type = 'bonus'"),
        )
        assert total[0][0] == 0

    @pytest.mark.asyncio
    async def test_open_epoch_rows_stay_writable(self, ledger, populated_epoch, database):
        await ledger.curation.refresh_allocations(populated_epoch.id)
        updated = await database.write(
            text("UPDATE epoch_allocations SET final_units = 5 WHERE subject_id = 'bob'"),
        )
        assert updated == 1


class TestSchemaSetup:

    @pytest.mark.asyncio
    async def test_create_all_is_repeatable(self, database):
        await database.create_all()
        rows = await database.read(text("SELECT COUNT(*) FROM sqlite_master WHERE type = 'trigger'"))
        assert rows[0][0] > 0

    def test_postgres_triggers_dropped_before_create(self):
        assert not [s for s in POSTGRES_GUARDS if "CREATE OR REPLACE TRIGGER" in s]
        for name, table, _, _ in POSTGRES_TRIGGERS:
            drop = POSTGRES_GUARDS.index(f"DROP TRIGGER IF EXISTS {name} ON {table}")
            assert POSTGRES_GUARDS[drop + 1].startswith(f"CREATE TRIGGER {name} BEFORE")
