"""Storage-layer write guards.

Triggers reject mutation of append-only tables and any write that touches
a closed epoch. Messages carry a ``ledger_immutable:<table>`` or
``ledger_epoch_closed:<table>`` marker that the store maps back onto
typed errors.
"""

from __future__ import annotations

from sqlalchemy import DDL, event

from .base import Base

IMMUTABLE_TABLES = ("activity_facts", "epoch_pool_components", "payout_statements")
EPOCH_SCOPED_TABLES = ("activity_curation", "epoch_allocations")


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


def _sqlite_immutable(table: str) -> list[str]:
    return [
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_update BEFORE UPDATE ON {table}
        BEGIN SELECT RAISE(ABORT, 'ledger_immutable:{table}'); END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_delete BEFORE DELETE ON {table}
        BEGIN SELECT RAISE(ABORT, 'ledger_immutable:{table}'); END
        """,
    ]


def _sqlite_closed(epoch_ref: str) -> str:
    return f"(SELECT status FROM epochs WHERE id = {epoch_ref}) = 'closed'"


def _sqlite_epoch_scoped(table: str) -> list[str]:
    return [
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_closed_insert BEFORE INSERT ON {table}
        WHEN {_sqlite_closed('NEW.epoch_id')}
        BEGIN SELECT RAISE(ABORT, 'ledger_epoch_closed:{table}'); END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_closed_update BEFORE UPDATE ON {table}
        WHEN {_sqlite_closed('OLD.epoch_id')} OR {_sqlite_closed('NEW.epoch_id')}
        BEGIN SELECT RAISE(ABORT, 'ledger_epoch_closed:{table}'); END
        """,
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_closed_delete BEFORE DELETE ON {table}
        WHEN {_sqlite_closed('OLD.epoch_id')}
        BEGIN SELECT RAISE(ABORT, 'ledger_epoch_closed:{table}'); END
        """,
    ]


SQLITE_GUARDS: list[str] = [
    *[stmt for t in IMMUTABLE_TABLES for stmt in _sqlite_immutable(t)],
    *[stmt for t in EPOCH_SCOPED_TABLES for stmt in _sqlite_epoch_scoped(t)],
    f"""
    CREATE TRIGGER IF NOT EXISTS epoch_pool_components_closed_insert
    BEFORE INSERT ON epoch_pool_components
    WHEN {_sqlite_closed('NEW.epoch_id')}
    BEGIN SELECT RAISE(ABORT, 'ledger_epoch_closed:epoch_pool_components'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS epochs_no_delete BEFORE DELETE ON epochs
    BEGIN SELECT RAISE(ABORT, 'ledger_immutable:epochs'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS epochs_frozen_when_closed BEFORE UPDATE ON epochs
    WHEN OLD.status = 'closed'
    BEGIN SELECT RAISE(ABORT, 'ledger_epoch_closed:epochs'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS epochs_pinned_fields BEFORE UPDATE ON epochs
    WHEN NEW.scope_id IS NOT OLD.scope_id
      OR NEW.period_start IS NOT OLD.period_start
      OR NEW.period_end IS NOT OLD.period_end
      OR NEW.weight_policy IS NOT OLD.weight_policy
      OR NEW.opened_at IS NOT OLD.opened_at
    BEGIN SELECT RAISE(ABORT, 'ledger_immutable:epochs'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS epochs_close_together BEFORE UPDATE ON epochs
    WHEN (NEW.status = 'open'
          AND (NEW.pool_total_credits IS NOT NULL OR NEW.closed_at IS NOT NULL))
      OR (NEW.status = 'closed'
          AND (NEW.pool_total_credits IS NULL OR NEW.closed_at IS NULL))
    BEGIN SELECT RAISE(ABORT, 'ledger_immutable:epochs'); END
    """,
]


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

# (trigger, table, events, function)
POSTGRES_TRIGGERS: list[tuple[str, str, str, str]] = [
    *[(f"{t}_immutable", t, "UPDATE OR DELETE", "ledger_reject_mutation") for t in IMMUTABLE_TABLES],
    *[
        (f"{t}_frozen", t, "INSERT OR UPDATE OR DELETE", "ledger_reject_closed_epoch_write")
        for t in EPOCH_SCOPED_TABLES
    ],
    ("epoch_pool_components_frozen", "epoch_pool_components", "INSERT", "ledger_reject_closed_epoch_write"),
    ("epochs_guard", "epochs", "UPDATE OR DELETE", "ledger_guard_epoch"),
]

POSTGRES_GUARDS: list[str] = [
    """
    CREATE OR REPLACE FUNCTION ledger_reject_mutation() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'ledger_immutable:%', TG_TABLE_NAME;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE FUNCTION ledger_reject_closed_epoch_write() RETURNS trigger AS $$
    DECLARE
        epoch_status text;
    BEGIN
        IF TG_OP IN ('UPDATE', 'DELETE') THEN
            SELECT status INTO epoch_status FROM epochs WHERE id = OLD.epoch_id;
            IF epoch_status = 'closed' THEN
                RAISE EXCEPTION 'ledger_epoch_closed:%', TG_TABLE_NAME;
            END IF;
        END IF;
        IF TG_OP IN ('INSERT', 'UPDATE') THEN
            SELECT status INTO epoch_status FROM epochs WHERE id = NEW.epoch_id;
            IF epoch_status = 'closed' THEN
                RAISE EXCEPTION 'ledger_epoch_closed:%', TG_TABLE_NAME;
            END IF;
        END IF;
        IF TG_OP = 'DELETE' THEN
            RETURN OLD;
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE OR REPLACE FUNCTION ledger_guard_epoch() RETURNS trigger AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION 'ledger_immutable:epochs';
        END IF;
        IF OLD.status = 'closed' THEN
            RAISE EXCEPTION 'ledger_epoch_closed:epochs';
        END IF;
        IF NEW.scope_id IS DISTINCT FROM OLD.scope_id
           OR NEW.period_start IS DISTINCT FROM OLD.period_start
           OR NEW.period_end IS DISTINCT FROM OLD.period_end
           OR NEW.weight_policy IS DISTINCT FROM OLD.weight_policy
           OR NEW.opened_at IS DISTINCT FROM OLD.opened_at THEN
            RAISE EXCEPTION 'ledger_immutable:epochs';
        END IF;
        IF (NEW.status = 'open'
            AND (NEW.pool_total_credits IS NOT NULL OR NEW.closed_at IS NOT NULL))
           OR (NEW.status = 'closed'
            AND (NEW.pool_total_credits IS NULL OR NEW.closed_at IS NULL)) THEN
            RAISE EXCEPTION 'ledger_immutable:epochs';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    # No CREATE OR REPLACE TRIGGER before PG 14.
    *[stmt for name, table, events, func in POSTGRES_TRIGGERS for stmt in (
        f"DROP TRIGGER IF EXISTS {name} ON {table}",
        f"CREATE TRIGGER {name} BEFORE {events} ON {table} FOR EACH ROW EXECUTE FUNCTION {func}()",
    )],
]

POSTGRES_GUARD_DROPS: list[str] = [
    *[f"DROP TRIGGER IF EXISTS {name} ON {table}" for name, table, _, _ in reversed(POSTGRES_TRIGGERS)],
    "DROP FUNCTION IF EXISTS ledger_guard_epoch()",
    "DROP FUNCTION IF EXISTS ledger_reject_closed_epoch_write()",
    "DROP FUNCTION IF EXISTS ledger_reject_mutation()",
]


def install_guards() -> None:
    """Attach guard DDL to ``Base.metadata.create_all`` for each dialect."""
    for stmt in SQLITE_GUARDS:
        event.listen(Base.metadata, "after_create", DDL(stmt).execute_if(dialect="sqlite"))
    for stmt in POSTGRES_GUARDS:
        # DDL applies %-formatting; RAISE EXCEPTION needs a literal %.
        ddl = DDL(stmt.replace("%", "%%"))
        event.listen(Base.metadata, "after_create", ddl.execute_if(dialect="postgresql"))


__all__ = [
    "EPOCH_SCOPED_TABLES",
    "IMMUTABLE_TABLES",
    "POSTGRES_GUARDS",
    "POSTGRES_GUARD_DROPS",
    "POSTGRES_TRIGGERS",
    "SQLITE_GUARDS",
    "install_guards",
]
