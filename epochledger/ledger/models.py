"""Pydantic models for the epoch ledger.

Facts, pool components and payout statements are immutable once stored;
curation entries and allocations change only while their epoch is open.
All weights, units and credits are integers (milli-units for weights and
units, whole credits for amounts).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator


# ---------------------------------------------------------------------------
# Schema version - bump on breaking changes to persisted statement format
# ---------------------------------------------------------------------------

LEDGER_SCHEMA_VERSION = 1

BASE_ISSUANCE = "base_issuance"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    return value.astimezone(timezone.utc)


class EpochStatus(str, Enum):
    """Epoch lifecycle states. ``closed`` is terminal."""

    OPEN = "open"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Weight policy
# ---------------------------------------------------------------------------


class WeightPolicy(BaseModel):
    """Versioned category -> milli-unit table, pinned into an epoch at open."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    weights: dict[str, StrictInt] = Field(default_factory=dict)

    @field_validator("weights")
    @classmethod
    def _non_negative(cls, v: dict[str, int]) -> dict[str, int]:
        for category, weight in v.items():
            if weight < 0:
                raise ValueError(f"weight for '{category}' must be >= 0, got {weight}")
        return v

    def weight_for(self, category: str) -> int:
        """Milli-units for a category; categories not in the table weigh 0."""
        return self.weights.get(category, 0)


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------


class NewActivityFact(BaseModel):
    """A normalized fact as produced by a source adapter, before storage."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, description="Deterministic id: source:kind:scope:native_id")
    source: str = Field(min_length=1)
    category: str = Field(min_length=1)
    platform_user_id: str = Field(min_length=1)
    platform_login: str | None = None
    artifact_url: str | None = None
    payload: dict[str, Any] | None = None
    payload_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    producer: str = Field(min_length=1)
    producer_version: str = Field(min_length=1)
    event_time: datetime
    retrieved_at: datetime

    @field_validator("event_time", "retrieved_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ActivityFact(NewActivityFact):
    """A stored fact. Never updated, never deleted."""

    scope_id: str
    ingested_at: datetime


class IdentityBinding(BaseModel):
    """Platform identity -> internal subject."""

    provider: str
    external_id: str
    subject_id: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Epochs and curation
# ---------------------------------------------------------------------------


class Epoch(BaseModel):
    """One accounting period in a scope."""

    id: int
    scope_id: str
    status: EpochStatus
    period_start: datetime
    period_end: datetime
    weight_policy: WeightPolicy
    pool_total_credits: int | None = None
    opened_at: datetime
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == EpochStatus.OPEN

    def contains(self, ts: datetime) -> bool:
        """Whether ``ts`` falls in the half-open window [start, end)."""
        return self.period_start <= ts < self.period_end


class CurationEntry(BaseModel):
    """Per (epoch, fact) attribution and review decision."""

    scope_id: str
    epoch_id: int
    fact_id: str
    subject_id: str | None = None
    included: bool = True
    weight_override_milli: int | None = None
    note: str | None = None
    created_at: datetime
    updated_at: datetime


class CurationSummary(BaseModel):
    """Counts from one curation pass over an epoch window."""

    total_facts: int = 0
    new_entries: int = 0
    resolved: int = 0
    unresolved: int = 0


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class PoolComponentInput(BaseModel):
    """A budget component computed and pinned by its caller."""

    component_type: str = Field(min_length=1)
    algorithm_version: str = Field(min_length=1)
    inputs: dict[str, Any] = Field(default_factory=dict)
    amount_credits: StrictInt = Field(ge=0)
    evidence_ref: str | None = None


class PoolComponent(PoolComponentInput):
    """A recorded, immutable pool component."""

    scope_id: str
    epoch_id: int
    computed_at: datetime


# ---------------------------------------------------------------------------
# Allocations and payouts
# ---------------------------------------------------------------------------


class ProposedAllocation(BaseModel):
    """Computed unit total for one subject, before reviewer overrides."""

    subject_id: str
    proposed_units: int
    activity_count: int


class Allocation(BaseModel):
    """Per (epoch, subject) unit total."""

    scope_id: str
    epoch_id: int
    subject_id: str
    proposed_units: int
    final_units: int | None = None
    override_reason: str | None = None
    activity_count: int = 0

    @property
    def effective_units(self) -> int:
        """Reviewer-set final units when present, else proposed units."""
        return self.final_units if self.final_units is not None else self.proposed_units


class Claim(BaseModel):
    """Input to the payout engine: units claimed by a subject."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    units: int


class PayoutLine(BaseModel):
    """One subject's share of an epoch pool."""

    subject_id: str
    total_units: int
    share: str = Field(description="units / total_units, truncated to 6 decimals")
    amount_credits: int


class PayoutStatement(BaseModel):
    """Immutable payout result. Corrections are new rows linked by supersession."""

    id: str
    scope_id: str
    epoch_id: int
    schema_version: int = LEDGER_SCHEMA_VERSION
    allocation_set_hash: str
    pool_total_credits: int
    payouts: list[PayoutLine] = Field(default_factory=list)
    supersedes_statement_id: str | None = None
    reason: str | None = None
    created_at: datetime

    @property
    def total_paid(self) -> int:
        return sum(p.amount_credits for p in self.payouts)


# ---------------------------------------------------------------------------
# Source cursors
# ---------------------------------------------------------------------------


class SourceCursor(BaseModel):
    """Incremental resumption point for one adapter stream."""

    scope_id: str
    source: str
    stream: str
    source_ref: str
    cursor_value: str
    retrieved_at: datetime


__all__ = [
    "BASE_ISSUANCE",
    "LEDGER_SCHEMA_VERSION",
    "ActivityFact",
    "Allocation",
    "Claim",
    "CurationEntry",
    "CurationSummary",
    "Epoch",
    "EpochStatus",
    "IdentityBinding",
    "NewActivityFact",
    "PayoutLine",
    "PayoutStatement",
    "PoolComponent",
    "PoolComponentInput",
    "ProposedAllocation",
    "SourceCursor",
    "WeightPolicy",
]
