"""Epoch contribution ledger.

Append-only activity facts, epoch-scoped curation, pinned weight policies,
pool aggregation and exact integer payouts that anyone can recompute.
"""

__version__ = "0.1.0"
