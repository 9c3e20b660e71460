"""Deterministic payout computation shared by close and verification.

Both ``EpochManager.close_epoch`` and ``EpochVerifier.verify`` call
``compute_payouts`` so identical inputs always give identical statements.
Integer arithmetic only: no float ever touches units or credits.
"""

from __future__ import annotations

from typing import Iterable

from .models import Claim, PayoutLine

SHARE_DECIMALS = 6
_SHARE_SCALE = 10 ** SHARE_DECIMALS


def format_share(units: int, total_units: int) -> str:
    """``units / total_units`` as a decimal string truncated to 6 places."""
    scaled = units * _SHARE_SCALE // total_units
    return f"{scaled // _SHARE_SCALE}.{scaled % _SHARE_SCALE:0{SHARE_DECIMALS}d}"


def group_claims(claims: Iterable[Claim]) -> dict[str, int]:
    """Sum units per subject. Rejects negative units."""
    totals: dict[str, int] = {}
    for claim in claims:
        if claim.units < 0:
            raise ValueError(
                f"units must be >= 0, got {claim.units} for '{claim.subject_id}'"
            )
        totals[claim.subject_id] = totals.get(claim.subject_id, 0) + claim.units
    return totals


def compute_payouts(claims: Iterable[Claim], total_pool_credits: int) -> list[PayoutLine]:
    """Largest-remainder apportionment of a credit pool.

    Steps:
    1. Group claims by subject
    2. Floor each subject's exact share of the pool
    3. Hand the leftover credits, one each, to the largest fractional
       remainders; ties go to the smaller subject id

    Postcondition: amounts sum to ``total_pool_credits`` whenever the
    result is non-empty. With no claims, or zero units overall, there is
    nothing to apportion and the result is empty.

    Args:
        claims: Units per subject (may repeat a subject).
        total_pool_credits: Whole credits to distribute.

    Returns:
        One PayoutLine per subject, sorted by subject id.
    """
    if total_pool_credits < 0:
        raise ValueError(f"total_pool_credits must be >= 0, got {total_pool_credits}")

    totals = group_claims(claims)
    total_units = sum(totals.values())
    if not totals or total_units == 0:
        return []

    subjects = sorted(totals)
    amounts: dict[str, int] = {}
    remainders: dict[str, int] = {}
    for subject_id in subjects:
        numerator = totals[subject_id] * total_pool_credits
        amounts[subject_id] = numerator // total_units
        remainders[subject_id] = numerator % total_units

    leftover = total_pool_credits - sum(amounts.values())
    # leftover < len(subjects), so one pass is enough
    ranked = sorted(subjects, key=lambda s: (-remainders[s], s))
    for subject_id in ranked[:leftover]:
        amounts[subject_id] += 1

    return [
        PayoutLine(
            subject_id=subject_id,
            total_units=totals[subject_id],
            share=format_share(totals[subject_id], total_units),
            amount_credits=amounts[subject_id],
        )
        for subject_id in subjects
    ]


__all__ = ["SHARE_DECIMALS", "compute_payouts", "format_share", "group_claims"]
