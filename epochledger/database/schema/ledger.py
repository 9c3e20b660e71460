"""Ledger tables.

Append-only and freeze-on-close rules are enforced by triggers installed
from ``guards.py``; the unique indexes below carry the idempotency and
one-open-epoch rules. Every table is partitioned by ``scope_id``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, UTCDateTime

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ActivityFactRow(Base):
    """Raw activity facts. Append-only."""

    __tablename__ = "activity_facts"

    scope_id: Mapped[str] = mapped_column(String, primary_key=True)
    id: Mapped[str] = mapped_column(
        String,
        primary_key=True,
        comment="Deterministic id derived from source + platform-native key",
    )
    source: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    platform_user_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_login: Mapped[str | None] = mapped_column(String)
    artifact_url: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    payload_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="SHA256 of canonical payload JSON",
    )
    producer: Mapped[str] = mapped_column(String, nullable=False)
    producer_version: Mapped[str] = mapped_column(String, nullable=False)
    event_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    retrieved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("activity_facts_scope_time_idx", "scope_id", "event_time"),
        Index("activity_facts_platform_user_idx", "source", "platform_user_id"),
    )


class IdentityBindingRow(Base):
    """Platform identity -> internal subject."""

    __tablename__ = "identity_bindings"

    scope_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String, primary_key=True)
    external_id: Mapped[str] = mapped_column(String, primary_key=True)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class EpochRow(Base):
    """Accounting periods. At most one open per scope."""

    __tablename__ = "epochs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="open")
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    weight_policy: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, comment="Weight policy pinned at open",
    )
    pool_total_credits: Mapped[int | None] = mapped_column(
        BigInteger, comment="Set exactly once, at close",
    )
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    __table_args__ = (
        CheckConstraint("status IN ('open', 'closed')", name="epochs_status_check"),
        CheckConstraint("period_end > period_start", name="epochs_period_check"),
        CheckConstraint(
            "pool_total_credits IS NULL OR pool_total_credits >= 0",
            name="epochs_pool_total_nonneg",
        ),
        Index(
            "epochs_window_unique",
            "scope_id", "period_start", "period_end",
            unique=True,
        ),
        Index(
            "epochs_one_open_per_scope",
            "scope_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
    )


class CurationRow(Base):
    """Per (epoch, fact) attribution. Frozen when the epoch closes."""

    __tablename__ = "activity_curation"

    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("epochs.id"), primary_key=True,
    )
    fact_id: Mapped[str] = mapped_column(String, primary_key=True)
    subject_id: Mapped[str | None] = mapped_column(
        String, comment="NULL until identity resolution succeeds",
    )
    included: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    weight_override_milli: Mapped[int | None] = mapped_column(BigInteger)
    note: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["scope_id", "fact_id"],
            ["activity_facts.scope_id", "activity_facts.id"],
            name="activity_curation_fact_fk",
        ),
        CheckConstraint(
            "weight_override_milli IS NULL OR weight_override_milli >= 0",
            name="activity_curation_override_nonneg",
        ),
        Index("activity_curation_unresolved_idx", "epoch_id", "subject_id"),
    )


class AllocationRow(Base):
    """Per (epoch, subject) unit totals. Frozen when the epoch closes."""

    __tablename__ = "epoch_allocations"

    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("epochs.id"), primary_key=True,
    )
    subject_id: Mapped[str] = mapped_column(String, primary_key=True)
    proposed_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    final_units: Mapped[int | None] = mapped_column(
        BigInteger, comment="Reviewer override; NULL means use proposed_units",
    )
    override_reason: Mapped[str | None] = mapped_column(Text)
    activity_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("proposed_units >= 0", name="epoch_allocations_proposed_nonneg"),
        CheckConstraint(
            "final_units IS NULL OR final_units >= 0",
            name="epoch_allocations_final_nonneg",
        ),
    )


class PoolComponentRow(Base):
    """Budget components. Append-only, one per (epoch, type)."""

    __tablename__ = "epoch_pool_components"

    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("epochs.id"), primary_key=True,
    )
    component_type: Mapped[str] = mapped_column(String, primary_key=True)
    algorithm_version: Mapped[str] = mapped_column(String, nullable=False)
    inputs: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, comment="Snapshotted inputs",
    )
    amount_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    evidence_ref: Mapped[str | None] = mapped_column(Text)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_credits >= 0", name="epoch_pool_components_amount_nonneg"),
    )


class PayoutStatementRow(Base):
    """Payout statements. Append-only; corrections link via supersedes."""

    __tablename__ = "payout_statements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("epochs.id"), nullable=False,
    )
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    allocation_set_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    pool_total_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payouts: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    supersedes_statement_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("payout_statements.id"),
    )
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index(
            "payout_statements_closing_unique",
            "epoch_id",
            unique=True,
            sqlite_where=text("supersedes_statement_id IS NULL"),
            postgresql_where=text("supersedes_statement_id IS NULL"),
        ),
        Index(
            "payout_statements_supersedes_unique",
            "supersedes_statement_id",
            unique=True,
        ),
    )


class SourceCursorRow(Base):
    """Adapter resumption cursors. Mutable, monotonic by convention."""

    __tablename__ = "source_cursors"

    scope_id: Mapped[str] = mapped_column(String, primary_key=True)
    source: Mapped[str] = mapped_column(String, primary_key=True)
    stream: Mapped[str] = mapped_column(String, primary_key=True)
    source_ref: Mapped[str] = mapped_column(String, primary_key=True)
    cursor_value: Mapped[str] = mapped_column(String, nullable=False)
    retrieved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


__all__ = [
    "ActivityFactRow",
    "AllocationRow",
    "CurationRow",
    "EpochRow",
    "IdentityBindingRow",
    "PayoutStatementRow",
    "PoolComponentRow",
    "SourceCursorRow",
]
