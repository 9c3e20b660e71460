"""Read-only HTTP endpoint over the ledger.

Runs as an async task alongside the CLI ``serve`` command. Routes:
  GET  /ledger/epochs                     - list epochs
  GET  /ledger/epochs/{id}                - one epoch
  GET  /ledger/epochs/{id}/facts          - facts in the epoch window
  GET  /ledger/epochs/{id}/allocations    - allocations
  GET  /ledger/epochs/{id}/pool           - pool components and their total
  GET  /ledger/epochs/{id}/statement      - current statement and history
  POST /ledger/epochs/{id}/verify         - recompute and diff
"""

from __future__ import annotations

import bittensor as bt
from aiohttp import web

from epochledger.auditor.verifier import EpochVerifier
from epochledger.errors import EpochNotFoundError
from epochledger.ledger.pool import sum_components
from epochledger.ledger.reader import LedgerReader


def _epoch_id(request: web.Request) -> int | None:
    try:
        return int(request.match_info["epoch_id"])
    except ValueError:
        return None


class LedgerHTTPServer:
    """Lightweight async HTTP server for ledger reads."""

    def __init__(
        self,
        reader: LedgerReader,
        verifier: EpochVerifier,
        host: str = "127.0.0.1",
        port: int = 8300,
    ):
        self.reader = reader
        self.verifier = verifier
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ledger/epochs", self._handle_list_epochs)
        app.router.add_get("/ledger/epochs/{epoch_id}", self._handle_get_epoch)
        app.router.add_get("/ledger/epochs/{epoch_id}/facts", self._handle_facts)
        app.router.add_get("/ledger/epochs/{epoch_id}/allocations", self._handle_allocations)
        app.router.add_get("/ledger/epochs/{epoch_id}/pool", self._handle_pool)
        app.router.add_get("/ledger/epochs/{epoch_id}/statement", self._handle_statement)
        app.router.add_post("/ledger/epochs/{epoch_id}/verify", self._handle_verify)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"ledger_http": {"status": "started", "host": self.host, "port": self.port}})

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            bt.logging.info({"ledger_http": "stopped"})

    @staticmethod
    def _not_found(endpoint: str, epoch_id: int | None) -> web.Response:
        bt.logging.info({"ledger_request": {"endpoint": endpoint, "status": 404, "epoch_id": epoch_id}})
        return web.json_response({"error": "not_found"}, status=404)

    @staticmethod
    def _bad_id(endpoint: str) -> web.Response:
        bt.logging.debug({"ledger_request": {"endpoint": endpoint, "status": 400}})
        return web.json_response({"error": "invalid_epoch_id"}, status=400)

    # -- Routes --

    async def _handle_list_epochs(self, request: web.Request) -> web.Response:
        epochs = await self.reader.list_epochs()
        bt.logging.info({"ledger_request": {"endpoint": "epochs", "status": 200, "count": len(epochs)}})
        return web.json_response({"epochs": [e.model_dump(mode="json") for e in epochs]})

    async def _handle_get_epoch(self, request: web.Request) -> web.Response:
        epoch_id = _epoch_id(request)
        if epoch_id is None:
            return self._bad_id("epochs/{id}")
        try:
            epoch = await self.reader.get_epoch(epoch_id)
        except EpochNotFoundError:
            return self._not_found("epochs/{id}", epoch_id)
        bt.logging.info({"ledger_request": {"endpoint": "epochs/{id}", "status": 200, "epoch_id": epoch_id}})
        return web.json_response(epoch.model_dump(mode="json"))

    async def _handle_facts(self, request: web.Request) -> web.Response:
        epoch_id = _epoch_id(request)
        if epoch_id is None:
            return self._bad_id("epochs/{id}/facts")
        try:
            facts = await self.reader.list_facts(epoch_id)
            curation = await self.reader.list_curation(epoch_id)
        except EpochNotFoundError:
            return self._not_found("epochs/{id}/facts", epoch_id)
        bt.logging.info({"ledger_request": {"endpoint": "epochs/{id}/facts", "status": 200, "count": len(facts)}})
        return web.json_response({
            "epoch_id": epoch_id,
            "facts": [f.model_dump(mode="json") for f in facts],
            "curation": [c.model_dump(mode="json") for c in curation],
        })

    async def _handle_allocations(self, request: web.Request) -> web.Response:
        epoch_id = _epoch_id(request)
        if epoch_id is None:
            return self._bad_id("epochs/{id}/allocations")
        try:
            allocations = await self.reader.list_allocations(epoch_id)
        except EpochNotFoundError:
            return self._not_found("epochs/{id}/allocations", epoch_id)
        bt.logging.info({"ledger_request": {"endpoint": "epochs/{id}/allocations", "status": 200, "count": len(allocations)}})
        return web.json_response({
            "epoch_id": epoch_id,
            "allocations": [
                {**a.model_dump(mode="json"), "effective_units": a.effective_units}
                for a in allocations
            ],
        })

    async def _handle_pool(self, request: web.Request) -> web.Response:
        epoch_id = _epoch_id(request)
        if epoch_id is None:
            return self._bad_id("epochs/{id}/pool")
        try:
            components = await self.reader.list_pool_components(epoch_id)
        except EpochNotFoundError:
            return self._not_found("epochs/{id}/pool", epoch_id)
        bt.logging.info({"ledger_request": {"endpoint": "epochs/{id}/pool", "status": 200, "count": len(components)}})
        return web.json_response({
            "epoch_id": epoch_id,
            "total_credits": sum_components(components),
            "components": [c.model_dump(mode="json") for c in components],
        })

    async def _handle_statement(self, request: web.Request) -> web.Response:
        epoch_id = _epoch_id(request)
        if epoch_id is None:
            return self._bad_id("epochs/{id}/statement")
        try:
            history = await self.reader.statement_history(epoch_id)
        except EpochNotFoundError:
            return self._not_found("epochs/{id}/statement", epoch_id)
        if not history:
            return self._not_found("epochs/{id}/statement", epoch_id)
        bt.logging.info({"ledger_request": {"endpoint": "epochs/{id}/statement", "status": 200, "epoch_id": epoch_id}})
        return web.json_response({
            "statement": history[-1].model_dump(mode="json"),
            "history": [s.id for s in history],
        })

    async def _handle_verify(self, request: web.Request) -> web.Response:
        epoch_id = _epoch_id(request)
        if epoch_id is None:
            return self._bad_id("epochs/{id}/verify")
        try:
            report = await self.verifier.verify(epoch_id)
        except EpochNotFoundError:
            return self._not_found("epochs/{id}/verify", epoch_id)
        bt.logging.info({"ledger_request": {"endpoint": "epochs/{id}/verify", "status": 200, "matches": report.matches}})
        return web.json_response(report.to_dict())


__all__ = ["LedgerHTTPServer"]
