"""Tests for source collection, cursors and run keys."""

from datetime import datetime, timedelta, timezone

import pytest

from epochledger.ledger.collect import (
    CollectResult,
    CollectWindow,
    CursorStore,
    EpochCollector,
    SourceAdapter,
    run_key,
)

SCOPE = "test-scope"


class FakeAdapter:
    """Serves one fact per stream per call, numbered from the cursor."""

    source = "github"
    version = "fake-1"

    def __init__(self, make_fact, streams=("acme/widgets", "acme/gears")):
        self._make_fact = make_fact
        self._streams = list(streams)
        self.calls = []

    def streams(self):
        return list(self._streams)

    async def collect(self, streams, cursor, window):
        self.calls.append((tuple(streams), cursor, window))
        start = int(cursor) if cursor is not None else 0
        offset = self._streams.index(streams[0]) * 1000
        native_id = offset + start + 1
        fact = self._make_fact(native_id, event_time=window.start + timedelta(minutes=native_id % 60))
        return CollectResult(facts=[fact], next_cursor=f"{start + 1:08d}")


class FailingAdapter(FakeAdapter):

    async def collect(self, streams, cursor, window):
        raise ConnectionError("platform unavailable")


class TestCursorStore:

    @pytest.mark.asyncio
    async def test_load_missing_is_none(self, database):
        cursors = CursorStore(database, SCOPE)
        assert await cursors.load("github", "acme/widgets", "default") is None

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, database):
        cursors = CursorStore(database, SCOPE)
        assert await cursors.save("github", "s", "default", "00000005") == "00000005"
        assert await cursors.save("github", "s", "default", "00000003") == "00000005"
        assert await cursors.save("github", "s", "default", "00000009") == "00000009"
        assert await cursors.load("github", "s", "default") == "00000009"

    @pytest.mark.asyncio
    async def test_cursors_are_keyed_by_ref(self, database):
        cursors = CursorStore(database, SCOPE)
        await cursors.save("github", "s", "main", "b")
        await cursors.save("github", "s", "backfill", "a")
        assert await cursors.load("github", "s", "main") == "b"
        assert await cursors.load("github", "s", "backfill") == "a"


class TestEpochCollector:

    def test_fake_adapter_satisfies_protocol(self, make_fact):
        assert isinstance(FakeAdapter(make_fact), SourceAdapter)

    @pytest.mark.asyncio
    async def test_collect_opens_epoch_and_ingests(self, database, make_fact, window, policy):
        adapter = FakeAdapter(make_fact)
        collector = EpochCollector(database, SCOPE, [adapter])

        report = await collector.collect(*window, policy)
        assert report.epoch_created is True
        assert report.status == "collected"
        assert (report.inserted, report.skipped, report.streams) == (2, 0, 2)
        assert all(window_ == CollectWindow(*window) for _, _, window_ in adapter.calls)

    @pytest.mark.asyncio
    async def test_second_run_resumes_from_cursor(self, database, make_fact, window, policy):
        adapter = FakeAdapter(make_fact)
        collector = EpochCollector(database, SCOPE, [adapter])
        await collector.collect(*window, policy)
        report = await collector.collect(*window, policy)

        assert report.epoch_created is False
        assert report.inserted == 2
        assert [cursor for _, cursor, _ in adapter.calls[2:]] == ["00000001", "00000001"]

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_cursor(self, database, make_fact, window, policy):
        await EpochCollector(database, SCOPE, [FakeAdapter(make_fact)]).collect(*window, policy)
        failing = EpochCollector(database, SCOPE, [FailingAdapter(make_fact)])
        with pytest.raises(ConnectionError):
            await failing.collect(*window, policy)
        cursors = CursorStore(database, SCOPE)
        assert await cursors.load("github", "acme/widgets", "default") == "00000001"

    @pytest.mark.asyncio
    async def test_missing_adapter_reported(self, database, make_fact, window, policy):
        collector = EpochCollector(database, SCOPE, [FakeAdapter(make_fact)])
        report = await collector.collect(*window, policy, sources=["slack", "github"])
        assert report.missing_sources == ["slack"]
        assert report.streams == 2

    @pytest.mark.asyncio
    async def test_closed_epoch_is_skipped(self, ledger, populated_epoch, make_fact, window, policy):
        await ledger.epochs.close_epoch(populated_epoch.id)
        adapter = FakeAdapter(make_fact)
        report = await EpochCollector(ledger.database, SCOPE, [adapter]).collect(*window, policy)
        assert report.status == "epoch_closed"
        assert report.epoch_id == populated_epoch.id
        assert adapter.calls == []


class TestRunKey:

    def test_collect_key_is_stable_across_timezones(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        end = datetime(2026, 1, 8, 2, tzinfo=timezone(timedelta(hours=2)))
        assert run_key("collect", "acme", period_start=start, period_end=end) == (
            "ledger-collect-acme-20260101T000000Z-20260108T000000Z"
        )

    def test_finalize_key(self):
        assert run_key("finalize", "acme", epoch_id=7) == "ledger-finalize-acme-7"

    @pytest.mark.parametrize("kind, kwargs", [
        ("collect", {}),
        ("finalize", {}),
        ("backfill", {"epoch_id": 1}),
    ])
    def test_bad_arguments_rejected(self, kind, kwargs):
        with pytest.raises(ValueError):
            run_key(kind, "acme", **kwargs)
