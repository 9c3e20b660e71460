"""Ledger core: facts, curation, pool, payouts and the epoch lifecycle.

Services (``FactStore``, ``CurationService``, ``PoolAggregator``,
``EpochManager``, ``EpochCollector``, ``LedgerReader``) live in their own
modules and run every operation in one database transaction. The pure
computation below is shared by close and verification.
"""

from .allocations import claims_from_allocations, compute_proposed_allocations
from .hashing import (
    build_fact_id,
    compute_allocation_set_hash,
    compute_hash,
    compute_payload_hash,
)
from .models import (
    BASE_ISSUANCE,
    LEDGER_SCHEMA_VERSION,
    ActivityFact,
    Allocation,
    Claim,
    CurationEntry,
    CurationSummary,
    Epoch,
    EpochStatus,
    IdentityBinding,
    NewActivityFact,
    PayoutLine,
    PayoutStatement,
    PoolComponent,
    PoolComponentInput,
    ProposedAllocation,
    SourceCursor,
    WeightPolicy,
)
from .payouts import compute_payouts

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
    "build_fact_id",
    "claims_from_allocations",
    "compute_allocation_set_hash",
    "compute_hash",
    "compute_payload_hash",
    "compute_payouts",
    "compute_proposed_allocations",
]
