"""Proposed allocation computation.

Pure function over curation rows and facts; the same code path runs when
allocations are refreshed during review and when a verifier recomputes
them from stored rows.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from .models import ActivityFact, Allocation, Claim, CurationEntry, ProposedAllocation, WeightPolicy
from .weights import units_for


def compute_proposed_allocations(
    curation: Iterable[CurationEntry],
    facts: Mapping[str, ActivityFact],
    policy: WeightPolicy,
) -> list[ProposedAllocation]:
    """Sum weighted units per subject.

    Only included entries with a resolved subject count. An entry whose
    fact is missing from ``facts`` is skipped.

    Returns:
        One ProposedAllocation per subject, sorted by subject id.
    """
    units: dict[str, int] = {}
    counts: dict[str, int] = {}
    for entry in curation:
        if not entry.included or entry.subject_id is None:
            continue
        fact = facts.get(entry.fact_id)
        if fact is None:
            continue
        subject_id = entry.subject_id
        units[subject_id] = units.get(subject_id, 0) + units_for(
            policy, fact.category, entry.weight_override_milli,
        )
        counts[subject_id] = counts.get(subject_id, 0) + 1

    return [
        ProposedAllocation(
            subject_id=subject_id,
            proposed_units=units[subject_id],
            activity_count=counts[subject_id],
        )
        for subject_id in sorted(units)
    ]


def claims_from_allocations(allocations: Iterable[Allocation]) -> list[Claim]:
    """Finalized claims, with reviewer final units taking precedence."""
    return sorted(
        (Claim(subject_id=a.subject_id, units=a.effective_units) for a in allocations),
        key=lambda c: c.subject_id,
    )


__all__ = ["claims_from_allocations", "compute_proposed_allocations"]
