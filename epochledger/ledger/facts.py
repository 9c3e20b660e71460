"""Append-only fact ingestion.

Re-ingesting a known fact id is a successful no-op. Facts are validated
before they reach storage; a bad payload hash or missing provenance is
rejected with ``MalformedFactError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

import bittensor as bt
from pydantic import ValidationError

from epochledger.database import Database
from epochledger.errors import MalformedFactError
from epochledger.ledger.hashing import compute_payload_hash
from epochledger.ledger.models import NewActivityFact
from epochledger.ledger.store.interface import FactLog
from epochledger.ledger.store.sql import SqlLedgerStore


@dataclass
class IngestResult:
    """Outcome of a single ingest call."""

    fact_id: str
    inserted: bool


@dataclass
class BatchIngestResult:
    """Counts from one batch ingest."""

    inserted: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.skipped


def validate_fact(fact: NewActivityFact | dict[str, Any]) -> NewActivityFact:
    """Parse and check a fact before storage."""
    if isinstance(fact, NewActivityFact):
        parsed = fact
    else:
        try:
            parsed = NewActivityFact.model_validate(fact)
        except ValidationError as e:
            fact_id = fact.get("id") if isinstance(fact, dict) else None
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise MalformedFactError(f"invalid fields: {', '.join(fields)}", fact_id) from e

    expected = compute_payload_hash(parsed.payload)
    if parsed.payload_hash != expected:
        raise MalformedFactError("payload_hash does not match payload", parsed.id)
    return parsed


async def append_facts(
    log: FactLog, facts: Iterable[NewActivityFact], ingested_at: datetime,
) -> BatchIngestResult:
    """Put validated facts on a log, counting new ids and known ones."""
    result = BatchIngestResult()
    for fact in facts:
        if await log.put_fact(fact, ingested_at):
            result.inserted += 1
        else:
            result.skipped += 1
    return result


class FactStore:
    """Idempotent writer for one scope's fact log."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    async def ingest(self, fact: NewActivityFact | dict[str, Any]) -> IngestResult:
        parsed = validate_fact(fact)
        now = datetime.now(timezone.utc)
        async with self.database.transaction() as conn:
            counts = await append_facts(SqlLedgerStore(conn, self.scope_id), [parsed], now)
        inserted = counts.inserted == 1
        if not inserted:
            bt.logging.debug({"fact_ingest": {"fact_id": parsed.id, "status": "duplicate"}})
        return IngestResult(fact_id=parsed.id, inserted=inserted)

    async def ingest_batch(
        self, facts: Iterable[NewActivityFact | dict[str, Any]],
    ) -> BatchIngestResult:
        """Ingest a batch atomically. Every fact is validated first."""
        parsed = [validate_fact(f) for f in facts]
        if not parsed:
            return BatchIngestResult()

        now = datetime.now(timezone.utc)
        async with self.database.transaction() as conn:
            result = await append_facts(SqlLedgerStore(conn, self.scope_id), parsed, now)

        bt.logging.info({
            "fact_ingest": {
                "scope_id": self.scope_id,
                "inserted": result.inserted,
                "skipped": result.skipped,
            }
        })
        return result


__all__ = ["BatchIngestResult", "FactStore", "IngestResult", "append_facts", "validate_fact"]
