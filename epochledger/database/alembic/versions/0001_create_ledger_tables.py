"""create_ledger_tables

Create the epoch ledger tables, their unique and partial indexes, and the
write guards that keep facts, pool components and statements append-only
and freeze curation and allocations once an epoch closes.

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from epochledger.database.schema.guards import (
    POSTGRES_GUARD_DROPS,
    POSTGRES_GUARDS,
    SQLITE_GUARDS,
)


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
BigIntPK = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')
TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    # -- 1. Facts and identity --
    op.create_table(
        'activity_facts',
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('id', sa.String(), nullable=False,
                  comment='Deterministic id derived from source + platform-native key'),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('platform_user_id', sa.String(), nullable=False),
        sa.Column('platform_login', sa.String(), nullable=True),
        sa.Column('artifact_url', sa.Text(), nullable=True),
        sa.Column('payload', JSONType, nullable=True),
        sa.Column('payload_hash', sa.String(64), nullable=False,
                  comment='SHA256 of canonical payload JSON'),
        sa.Column('producer', sa.String(), nullable=False),
        sa.Column('producer_version', sa.String(), nullable=False),
        sa.Column('event_time', TS, nullable=False),
        sa.Column('retrieved_at', TS, nullable=False),
        sa.Column('ingested_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('scope_id', 'id'),
    )
    op.create_index('activity_facts_scope_time_idx', 'activity_facts', ['scope_id', 'event_time'])
    op.create_index('activity_facts_platform_user_idx', 'activity_facts', ['source', 'platform_user_id'])

    op.create_table(
        'identity_bindings',
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('scope_id', 'provider', 'external_id'),
    )

    # -- 2. Epochs --
    op.create_table(
        'epochs',
        sa.Column('id', BigIntPK, autoincrement=True, nullable=False),
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('period_start', TS, nullable=False),
        sa.Column('period_end', TS, nullable=False),
        sa.Column('weight_policy', JSONType, nullable=False, comment='Weight policy pinned at open'),
        sa.Column('pool_total_credits', sa.BigInteger(), nullable=True,
                  comment='Set exactly once, at close'),
        sa.Column('opened_at', TS, nullable=False),
        sa.Column('closed_at', TS, nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("status IN ('open', 'closed')", name='epochs_status_check'),
        sa.CheckConstraint('period_end > period_start', name='epochs_period_check'),
        sa.CheckConstraint(
            'pool_total_credits IS NULL OR pool_total_credits >= 0',
            name='epochs_pool_total_nonneg',
        ),
    )
    op.create_index(
        'epochs_window_unique', 'epochs',
        ['scope_id', 'period_start', 'period_end'], unique=True,
    )
    op.create_index(
        'epochs_one_open_per_scope', 'epochs', ['scope_id'], unique=True,
        sqlite_where=sa.text("status = 'open'"),
        postgresql_where=sa.text("status = 'open'"),
    )

    # -- 3. Curation and allocations (frozen at close) --
    op.create_table(
        'activity_curation',
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('epoch_id', sa.BigInteger(), nullable=False),
        sa.Column('fact_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=True,
                  comment='NULL until identity resolution succeeds'),
        sa.Column('included', sa.Boolean(), nullable=False),
        sa.Column('weight_override_milli', sa.BigInteger(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('epoch_id', 'fact_id'),
        sa.ForeignKeyConstraint(['epoch_id'], ['epochs.id']),
        sa.ForeignKeyConstraint(
            ['scope_id', 'fact_id'],
            ['activity_facts.scope_id', 'activity_facts.id'],
            name='activity_curation_fact_fk',
        ),
        sa.CheckConstraint(
            'weight_override_milli IS NULL OR weight_override_milli >= 0',
            name='activity_curation_override_nonneg',
        ),
    )
    op.create_index('activity_curation_unresolved_idx', 'activity_curation', ['epoch_id', 'subject_id'])

    op.create_table(
        'epoch_allocations',
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('epoch_id', sa.BigInteger(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('proposed_units', sa.BigInteger(), nullable=False),
        sa.Column('final_units', sa.BigInteger(), nullable=True,
                  comment='Reviewer override; NULL means use proposed_units'),
        sa.Column('override_reason', sa.Text(), nullable=True),
        sa.Column('activity_count', sa.Integer(), nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('epoch_id', 'subject_id'),
        sa.ForeignKeyConstraint(['epoch_id'], ['epochs.id']),
        sa.CheckConstraint('proposed_units >= 0', name='epoch_allocations_proposed_nonneg'),
        sa.CheckConstraint(
            'final_units IS NULL OR final_units >= 0',
            name='epoch_allocations_final_nonneg',
        ),
    )

    # -- 4. Pool components and statements (append-only) --
    op.create_table(
        'epoch_pool_components',
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('epoch_id', sa.BigInteger(), nullable=False),
        sa.Column('component_type', sa.String(), nullable=False),
        sa.Column('algorithm_version', sa.String(), nullable=False),
        sa.Column('inputs', JSONType, nullable=False, comment='Snapshotted inputs'),
        sa.Column('amount_credits', sa.BigInteger(), nullable=False),
        sa.Column('evidence_ref', sa.Text(), nullable=True),
        sa.Column('computed_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('epoch_id', 'component_type'),
        sa.ForeignKeyConstraint(['epoch_id'], ['epochs.id']),
        sa.CheckConstraint('amount_credits >= 0', name='epoch_pool_components_amount_nonneg'),
    )

    op.create_table(
        'payout_statements',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('epoch_id', sa.BigInteger(), nullable=False),
        sa.Column('schema_version', sa.Integer(), nullable=False),
        sa.Column('allocation_set_hash', sa.String(64), nullable=False),
        sa.Column('pool_total_credits', sa.BigInteger(), nullable=False),
        sa.Column('payouts', JSONType, nullable=False),
        sa.Column('supersedes_statement_id', sa.String(36), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['epoch_id'], ['epochs.id']),
        sa.ForeignKeyConstraint(['supersedes_statement_id'], ['payout_statements.id']),
    )
    op.create_index(
        'payout_statements_closing_unique', 'payout_statements', ['epoch_id'], unique=True,
        sqlite_where=sa.text('supersedes_statement_id IS NULL'),
        postgresql_where=sa.text('supersedes_statement_id IS NULL'),
    )
    op.create_index(
        'payout_statements_supersedes_unique', 'payout_statements',
        ['supersedes_statement_id'], unique=True,
    )

    # -- 5. Source cursors (mutable) --
    op.create_table(
        'source_cursors',
        sa.Column('scope_id', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('stream', sa.String(), nullable=False),
        sa.Column('source_ref', sa.String(), nullable=False),
        sa.Column('cursor_value', sa.String(), nullable=False),
        sa.Column('retrieved_at', TS, nullable=False),
        sa.PrimaryKeyConstraint('scope_id', 'source', 'stream', 'source_ref'),
    )

    # -- 6. Write guards --
    guards = POSTGRES_GUARDS if op.get_bind().dialect.name == 'postgresql' else SQLITE_GUARDS
    for stmt in guards:
        op.execute(stmt)


def downgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        for stmt in POSTGRES_GUARD_DROPS:
            op.execute(stmt)

    op.drop_table('source_cursors')
    op.drop_index('payout_statements_supersedes_unique', table_name='payout_statements')
    op.drop_index('payout_statements_closing_unique', table_name='payout_statements')
    op.drop_table('payout_statements')
    op.drop_table('epoch_pool_components')
    op.drop_table('epoch_allocations')
    op.drop_index('activity_curation_unresolved_idx', table_name='activity_curation')
    op.drop_table('activity_curation')
    op.drop_index('epochs_one_open_per_scope', table_name='epochs')
    op.drop_index('epochs_window_unique', table_name='epochs')
    op.drop_table('epochs')
    op.drop_table('identity_bindings')
    op.drop_index('activity_facts_platform_user_idx', table_name='activity_facts')
    op.drop_index('activity_facts_scope_time_idx', table_name='activity_facts')
    op.drop_table('activity_facts')
