"""Epoch-pinned weight lookup."""

from __future__ import annotations

from epochledger.database import Database
from epochledger.errors import EpochNotFoundError
from epochledger.ledger.models import WeightPolicy
from epochledger.ledger.store.sql import SqlLedgerStore


def units_for(policy: WeightPolicy, category: str, override_milli: int | None = None) -> int:
    """Milli-units one fact contributes: reviewer override, else policy weight."""
    if override_milli is not None:
        return override_milli
    return policy.weight_for(category)


async def weight_for(database: Database, scope_id: str, epoch_id: int, category: str) -> int:
    """Weight of ``category`` under the policy pinned into ``epoch_id``.

    Later changes to configured policies never reach an existing epoch.
    """
    async with database.transaction() as conn:
        epoch = await SqlLedgerStore(conn, scope_id).get_epoch(epoch_id)
    if epoch is None:
        raise EpochNotFoundError(epoch_id)
    return epoch.weight_policy.weight_for(category)


__all__ = ["units_for", "weight_for"]
