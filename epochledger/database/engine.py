"""Async engine wrapper shared by every ledger service.

SQLite connections begin ``IMMEDIATE`` transactions so concurrent writers
queue on the busy timeout instead of failing mid-transaction. Guard
trigger failures are translated into typed ledger errors here.
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import bittensor as bt
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from epochledger.database.schema import Base
from epochledger.errors import EpochClosedError, ImmutableRecordError, LedgerError

_GUARD_MARKER = re.compile(r"ledger_(immutable|epoch_closed):(\w+)")


def translate_guard_error(exc: DBAPIError) -> LedgerError | None:
    """Map a guard trigger failure onto its typed error, else None."""
    match = _GUARD_MARKER.search(str(exc.orig) if exc.orig is not None else str(exc))
    if match is None:
        return None
    kind, table = match.groups()
    if kind == "epoch_closed":
        return EpochClosedError(table=table)
    return ImmutableRecordError(table)


class Database:
    """Owns the async engine and hands out transactions."""

    def __init__(self, url: str, *, echo: bool = False, busy_timeout: float = 30.0):
        self.url = make_url(url)
        connect_args: dict[str, Any] = {}
        if self.is_sqlite:
            connect_args["timeout"] = busy_timeout
        self.engine: AsyncEngine = create_async_engine(
            url, echo=echo, connect_args=connect_args,
        )
        if self.is_sqlite:
            self._install_sqlite_hooks()

    @property
    def is_sqlite(self) -> bool:
        return self.url.get_backend_name() == "sqlite"

    def _install_sqlite_hooks(self) -> None:
        sync_engine = self.engine.sync_engine

        @event.listens_for(sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Driver-level BEGIN is disabled; the begin hook below issues it.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(sync_engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """One atomic unit of work; commits on exit, rolls back on error."""
        try:
            async with self.engine.begin() as conn:
                yield conn
        except DBAPIError as exc:
            translated = translate_guard_error(exc)
            if translated is None:
                raise
            bt.logging.debug({"ledger_guard": {"error": translated.code, "detail": str(translated)}})
            raise translated from exc

    async def read(
        self,
        query: Any,
        params: dict[str, Any] | None = None,
        mappings: bool = False,
    ) -> list[Any]:
        async with self.transaction() as conn:
            result = await conn.execute(query, params or {})
            return list(result.mappings().all() if mappings else result.all())

    async def write(self, query: Any, params: dict[str, Any] | None = None) -> int:
        async with self.transaction() as conn:
            result = await conn.execute(query, params or {})
            return result.rowcount

    async def create_all(self) -> None:
        """Create tables, indexes and guard triggers."""
        async with self.transaction() as conn:
            await conn.run_sync(Base.metadata.create_all)
        bt.logging.info({"ledger_db": {"status": "schema_ready", "dialect": self.url.get_backend_name()}})

    async def dispose(self) -> None:
        await self.engine.dispose()


__all__ = ["Database", "translate_guard_error"]
