"""Shared fixtures: a fresh SQLite ledger per test and fact builders."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from epochledger.auditor.verifier import EpochVerifier
from epochledger.database import Database
from epochledger.ledger.curation import CurationService
from epochledger.ledger.epochs import EpochManager
from epochledger.ledger.facts import FactStore
from epochledger.ledger.hashing import build_fact_id, compute_payload_hash
from epochledger.ledger.models import (
    BASE_ISSUANCE,
    NewActivityFact,
    PoolComponentInput,
    WeightPolicy,
)
from epochledger.ledger.pool import PoolAggregator
from epochledger.ledger.reader import LedgerReader

SCOPE = "test-scope"
PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 1, 8, tzinfo=timezone.utc)


@dataclass
class Ledger:
    """All services bound to one test database and scope."""

    database: Database
    facts: FactStore
    curation: CurationService
    pool: PoolAggregator
    epochs: EpochManager
    verifier: EpochVerifier
    reader: LedgerReader


@pytest.fixture
def window() -> tuple[datetime, datetime]:
    return PERIOD_START, PERIOD_END


@pytest.fixture
def policy() -> WeightPolicy:
    return WeightPolicy(
        version="v1",
        weights={"pr_merged": 1000, "review_submitted": 500, "issue_closed": 300},
    )


@pytest.fixture
def make_fact():
    """Build a valid fact; keyword overrides replace defaults."""

    def _make(native_id, *, user="gh-1", category="pr_merged", event_time=None, payload=None, **overrides):
        payload = payload if payload is not None else {"number": native_id, "repo": "acme/widgets"}
        data = dict(
            id=build_fact_id("github", "pr", "acme/widgets", native_id),
            source="github",
            category=category,
            platform_user_id=user,
            platform_login=f"login-{user}",
            artifact_url=f"https://github.com/acme/widgets/pull/{native_id}",
            payload=payload,
            payload_hash=compute_payload_hash(payload),
            producer="github-adapter",
            producer_version="1.0.0",
            event_time=event_time or PERIOD_START + timedelta(hours=1),
            retrieved_at=PERIOD_END,
        )
        data.update(overrides)
        return NewActivityFact(**data)

    return _make


@pytest.fixture
def base_issuance():
    def _make(amount: int = 100) -> PoolComponentInput:
        return PoolComponentInput(
            component_type=BASE_ISSUANCE,
            algorithm_version="fixed-v1",
            inputs={"amount": amount},
            amount_credits=amount,
        )

    return _make


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", busy_timeout=30.0)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def ledger(database) -> Ledger:
    return Ledger(
        database=database,
        facts=FactStore(database, SCOPE),
        curation=CurationService(database, SCOPE),
        pool=PoolAggregator(database, SCOPE),
        epochs=EpochManager(database, SCOPE),
        verifier=EpochVerifier(database, SCOPE),
        reader=LedgerReader(database, SCOPE),
    )


@pytest_asyncio.fixture
async def open_epoch(ledger, window, policy):
    result = await ledger.epochs.open_epoch(*window, policy)
    return result.epoch


@pytest_asyncio.fixture
async def populated_epoch(ledger, open_epoch, make_fact, base_issuance):
    """Open epoch with alice (2 PRs), bob (1 review), one unbound fact, and a 100 credit pool."""
    await ledger.curation.bind_identity("github", "gh-alice", "alice")
    await ledger.curation.bind_identity("github", "gh-bob", "bob")
    await ledger.facts.ingest_batch([
        make_fact(1, user="gh-alice"),
        make_fact(2, user="gh-alice"),
        make_fact(3, user="gh-bob", category="review_submitted"),
        make_fact(4, user="gh-stranger"),
    ])
    await ledger.curation.curate_epoch(open_epoch.id)
    await ledger.pool.record_component(open_epoch.id, base_issuance(100))
    return open_epoch
