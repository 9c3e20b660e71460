"""Collection: source adapters -> fact store, resumable by cursor.

Adapters own all contact with third-party platforms. The collector only
sequences them: ensure the epoch exists, then for each stream load the
cursor, collect, ingest, and save the cursor. A failed fetch leaves the
previous cursor in place, so a retry resumes instead of rescanning.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Protocol, runtime_checkable

import bittensor as bt

from epochledger.database import Database
from epochledger.ledger.epochs import EpochManager
from epochledger.ledger.facts import FactStore
from epochledger.ledger.models import NewActivityFact, SourceCursor, WeightPolicy
from epochledger.ledger.store.sql import SqlLedgerStore


@dataclass(frozen=True)
class CollectWindow:
    """Half-open time window [start, end) an adapter should cover."""

    start: datetime
    end: datetime


@dataclass
class CollectResult:
    """One adapter batch plus where to resume next time."""

    facts: list[NewActivityFact] = field(default_factory=list)
    next_cursor: str | None = None


@runtime_checkable
class SourceAdapter(Protocol):
    """Narrow contract a platform connector implements."""

    source: str
    version: str

    def streams(self) -> list[str]:
        """Stream identifiers this adapter reads (e.g. repositories)."""
        ...

    async def collect(
        self, streams: list[str], cursor: str | None, window: CollectWindow,
    ) -> CollectResult:
        ...


@dataclass
class CollectionReport:
    """Summary of one collect run."""

    epoch_id: int
    epoch_created: bool
    status: str = "collected"
    inserted: int = 0
    skipped: int = 0
    streams: int = 0
    missing_sources: list[str] = field(default_factory=list)


def run_key(
    kind: str,
    scope_id: str,
    *,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    epoch_id: int | None = None,
) -> str:
    """Deterministic key an orchestrator uses to dedupe a run.

    ``collect`` runs are keyed by window, ``finalize`` runs by epoch.
    """
    if kind == "collect":
        if period_start is None or period_end is None:
            raise ValueError("collect keys need period_start and period_end")
        start = period_start.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        end = period_end.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        return f"ledger-collect-{scope_id}-{start}-{end}"
    if kind == "finalize":
        if epoch_id is None:
            raise ValueError("finalize keys need epoch_id")
        return f"ledger-finalize-{scope_id}-{epoch_id}"
    raise ValueError(f"unknown run kind: {kind}")


class CursorStore:
    """Per-stream resumption cursors. Saves never move a cursor backwards."""

    def __init__(self, database: Database, scope_id: str):
        self.database = database
        self.scope_id = scope_id

    async def load(self, source: str, stream: str, source_ref: str) -> str | None:
        async with self.database.transaction() as conn:
            cursor = await SqlLedgerStore(conn, self.scope_id).get_cursor(source, stream, source_ref)
        return cursor.cursor_value if cursor else None

    async def save(self, source: str, stream: str, source_ref: str, value: str) -> str:
        """Store ``value`` unless it sorts before the stored cursor. Returns the kept value."""
        async with self.database.transaction() as conn:
            store = SqlLedgerStore(conn, self.scope_id)
            existing = await store.get_cursor(source, stream, source_ref)
            if existing is not None and existing.cursor_value >= value:
                return existing.cursor_value
            await store.put_cursor(SourceCursor(
                scope_id=self.scope_id,
                source=source,
                stream=stream,
                source_ref=source_ref,
                cursor_value=value,
                retrieved_at=datetime.now(timezone.utc),
            ))
        bt.logging.info({"cursor_save": {"source": source, "stream": stream, "cursor": value}})
        return value


class EpochCollector:
    """Runs source adapters into the fact log for one epoch window."""

    def __init__(
        self,
        database: Database,
        scope_id: str,
        adapters: Iterable[SourceAdapter],
    ):
        self.database = database
        self.scope_id = scope_id
        self.adapters = {a.source: a for a in adapters}
        self.epochs = EpochManager(database, scope_id)
        self.facts = FactStore(database, scope_id)
        self.cursors = CursorStore(database, scope_id)

    async def collect(
        self,
        period_start: datetime,
        period_end: datetime,
        weight_policy: WeightPolicy,
        sources: Iterable[str] | None = None,
        source_ref: str = "default",
    ) -> CollectionReport:
        opened = await self.epochs.open_epoch(period_start, period_end, weight_policy)
        epoch = opened.epoch
        report = CollectionReport(epoch_id=epoch.id, epoch_created=opened.created)
        if not epoch.is_open:
            report.status = "epoch_closed"
            bt.logging.info({"collect": {"epoch_id": epoch.id, "status": "skipped_closed"}})
            return report

        window = CollectWindow(start=epoch.period_start, end=epoch.period_end)
        names = list(sources) if sources is not None else sorted(self.adapters)
        for name in names:
            adapter = self.adapters.get(name)
            if adapter is None:
                report.missing_sources.append(name)
                bt.logging.warning({"collect": {"source": name, "status": "missing_adapter"}})
                continue

            for stream in adapter.streams():
                cursor = await self.cursors.load(name, stream, source_ref)
                result = await adapter.collect([stream], cursor, window)
                batch = await self.facts.ingest_batch(result.facts)
                report.inserted += batch.inserted
                report.skipped += batch.skipped
                report.streams += 1
                if result.next_cursor is not None:
                    await self.cursors.save(name, stream, source_ref, result.next_cursor)

        bt.logging.info({
            "collect": {
                "epoch_id": epoch.id,
                "status": report.status,
                "streams": report.streams,
                "inserted": report.inserted,
                "skipped": report.skipped,
            }
        })
        return report


__all__ = [
    "CollectResult",
    "CollectWindow",
    "CollectionReport",
    "CursorStore",
    "EpochCollector",
    "SourceAdapter",
    "run_key",
]
