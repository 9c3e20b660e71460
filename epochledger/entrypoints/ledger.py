"""Ledger command-line entrypoint.

Thin wrappers around the ledger services. Each command prints a JSON
result on stdout. Environment variables (``EPOCHLEDGER_*``) take
precedence over CLI flags.
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from datetime import datetime

import bittensor as bt
from dotenv import load_dotenv

from epochledger.config import LedgerSettings
from epochledger.errors import LedgerError


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        raise argparse.ArgumentTypeError(f"timestamp needs a UTC offset: {value}")
    return ts


def _print(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="epochledger", description="Epoch contribution ledger")
    bt.logging.add_args(parser)
    parser.add_argument("--database-url", type=str, default=None)
    parser.add_argument("--scope", type=str, default=None)
    parser.add_argument("--debug", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables and guard triggers")

    p = sub.add_parser("open-epoch", help="open an epoch for a window")
    p.add_argument("--start", type=_parse_ts, required=True)
    p.add_argument("--end", type=_parse_ts, required=True)
    p.add_argument("--policy-file", type=str, default=None, help="JSON {version, weights}")

    p = sub.add_parser("record-pool", help="record a pool component")
    p.add_argument("epoch_id", type=int)
    p.add_argument("--type", dest="component_type", default="base_issuance")
    p.add_argument("--amount", type=int, default=None)
    p.add_argument("--algorithm-version", default="fixed-v1")
    p.add_argument("--inputs", default="{}", help="JSON object of pinned inputs")
    p.add_argument("--evidence", default=None)

    p = sub.add_parser("bind-identity", help="bind a platform identity to a subject")
    p.add_argument("provider")
    p.add_argument("external_id")
    p.add_argument("subject_id")

    p = sub.add_parser("curate", help="assign facts and refresh allocations")
    p.add_argument("epoch_id", type=int)

    p = sub.add_parser("close-epoch", help="finalize an epoch (idempotent)")
    p.add_argument("epoch_id", type=int)

    p = sub.add_parser("verify", help="recompute a closed epoch and diff")
    p.add_argument("epoch_id", type=int)

    p = sub.add_parser("serve", help="run the read-only HTTP API")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)

    return parser


def resolve_settings(args: argparse.Namespace) -> LedgerSettings:
    """Settings from env, falling back to CLI flags, then defaults."""
    overrides = {}
    if args.database_url and "EPOCHLEDGER_DATABASE_URL" not in os.environ:
        overrides["database_url"] = args.database_url
    if args.scope and "EPOCHLEDGER_SCOPE_ID" not in os.environ:
        overrides["scope_id"] = args.scope
    settings = LedgerSettings(**overrides)
    if args.command == "serve":
        if args.host and "EPOCHLEDGER_HTTP__HOST" not in os.environ:
            settings.http.host = args.host
        if args.port and "EPOCHLEDGER_HTTP__PORT" not in os.environ:
            settings.http.port = args.port
    return settings


async def _serve(server) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await server.start()
    try:
        await stop.wait()
    finally:
        await server.stop()


async def run(args: argparse.Namespace, settings: LedgerSettings):
    from epochledger.auditor.verifier import EpochVerifier
    from epochledger.database import Database
    from epochledger.ledger.curation import CurationService
    from epochledger.ledger.epochs import EpochManager
    from epochledger.ledger.models import BASE_ISSUANCE, PoolComponentInput, WeightPolicy
    from epochledger.ledger.pool import PoolAggregator
    from epochledger.ledger.reader import LedgerReader
    from epochledger.ledger.store.http_server import LedgerHTTPServer

    database = Database(
        settings.database_url,
        echo=settings.echo_sql,
        busy_timeout=settings.sqlite_busy_timeout,
    )
    scope = settings.scope_id
    try:
        if args.command == "init-db":
            await database.create_all()
            return {"status": "ok"}

        if args.command == "open-epoch":
            if args.policy_file:
                with open(args.policy_file, encoding="utf-8") as f:
                    policy = WeightPolicy.model_validate(json.load(f))
            else:
                policy = WeightPolicy.model_validate(settings.weight_policy.model_dump())
            result = await EpochManager(database, scope).open_epoch(args.start, args.end, policy)
            return {"created": result.created, "epoch": result.epoch.model_dump(mode="json")}

        if args.command == "record-pool":
            amount = args.amount
            if amount is None:
                if args.component_type != BASE_ISSUANCE:
                    raise SystemExit("--amount is required for non-base components")
                amount = settings.base_issuance_credits
            component = PoolComponentInput(
                component_type=args.component_type,
                algorithm_version=args.algorithm_version,
                inputs=json.loads(args.inputs),
                amount_credits=amount,
                evidence_ref=args.evidence,
            )
            recorded = await PoolAggregator(database, scope).record_component(args.epoch_id, component)
            return recorded.model_dump(mode="json")

        if args.command == "bind-identity":
            binding = await CurationService(database, scope).bind_identity(
                args.provider, args.external_id, args.subject_id,
            )
            return binding.model_dump(mode="json")

        if args.command == "curate":
            curation = CurationService(database, scope)
            summary = await curation.curate_epoch(args.epoch_id)
            allocations = await curation.refresh_allocations(args.epoch_id)
            return {
                "summary": summary.model_dump(),
                "allocations": [a.model_dump(mode="json") for a in allocations],
            }

        if args.command == "close-epoch":
            result = await EpochManager(database, scope).close_epoch(args.epoch_id)
            return {"created": result.created, "statement": result.statement.model_dump(mode="json")}

        if args.command == "verify":
            report = await EpochVerifier(database, scope).verify(args.epoch_id)
            return report.to_dict()

        if args.command == "serve":
            server = LedgerHTTPServer(
                reader=LedgerReader(database, scope),
                verifier=EpochVerifier(database, scope),
                host=settings.http.host,
                port=settings.http.port,
            )
            await _serve(server)
            return {"status": "stopped"}

        raise SystemExit(f"unknown command: {args.command}")
    finally:
        await database.dispose()


def main(argv: list[str] | None = None) -> None:
    # Load .env if not in test mode
    if os.environ.get("EPOCHLEDGER_TEST_MODE") != "true":
        load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug:
        bt.logging.set_debug(True)

    settings = resolve_settings(args)
    bt.logging.debug({"ledger_cli": {"command": args.command, "scope_id": settings.scope_id}})

    try:
        result = asyncio.run(run(args, settings))
    except LedgerError as e:
        bt.logging.error({"ledger_cli": {"command": args.command, "error": e.code, "detail": str(e)}})
        _print({"error": e.code, "detail": str(e)})
        sys.exit(2)

    _print(result)
    if args.command == "verify" and not result["matches"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
