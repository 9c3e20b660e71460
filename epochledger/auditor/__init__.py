"""Independent verification of closed epochs.

Recomputes allocations and payouts from stored facts, curation decisions
and pool components only, and reports every disagreement with the
persisted statement.
"""

from .verifier import EpochVerifier, FieldDiff, VerificationReport

__all__ = ["EpochVerifier", "FieldDiff", "VerificationReport"]
