"""Tests for the epochledger command line."""

import json

import pytest

from epochledger.config import LedgerSettings, get_settings
from epochledger.entrypoints.ledger import build_parser, main, resolve_settings, run


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("EPOCHLEDGER_DATABASE_URL", "EPOCHLEDGER_SCOPE_ID", "EPOCHLEDGER_HTTP__PORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("EPOCHLEDGER_TEST_MODE", "true")
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def db_url(clean_env):
    return f"sqlite+aiosqlite:///{clean_env / 'cli.db'}"


def _cli(db_url, *argv):
    return ["--database-url", db_url, "--scope", "cli", *argv]


class TestSettings:

    def test_cli_flags_used_without_env(self, clean_env):
        args = build_parser().parse_args(["--scope", "acme", "serve", "--port", "9001"])
        settings = resolve_settings(args)
        assert settings.scope_id == "acme"
        assert settings.http.port == 9001

    def test_env_beats_cli(self, clean_env, monkeypatch):
        monkeypatch.setenv("EPOCHLEDGER_SCOPE_ID", "from-env")
        monkeypatch.setenv("EPOCHLEDGER_HTTP__PORT", "9100")
        args = build_parser().parse_args(["--scope", "from-cli", "serve", "--port", "9001"])
        settings = resolve_settings(args)
        assert settings.scope_id == "from-env"
        assert settings.http.port == 9100

    def test_defaults(self, clean_env):
        settings = LedgerSettings()
        assert settings.scope_id == "default"
        assert settings.weight_policy.weights["pr_merged"] == 1000

    def test_get_settings_is_cached(self, clean_env, monkeypatch):
        monkeypatch.setenv("EPOCHLEDGER_SCOPE_ID", "cached")
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
            assert get_settings().scope_id == "cached"
        finally:
            get_settings.cache_clear()

    def test_timestamps_need_offset(self, clean_env):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["open-epoch", "--start", "2026-01-01T00:00:00", "--end", "2026-01-08T00:00:00Z"])


class TestCommands:

    @pytest.mark.asyncio
    async def test_open_record_close_verify(self, db_url):
        parser = build_parser()

        async def call(*argv):
            args = parser.parse_args(_cli(db_url, *argv))
            return await run(args, resolve_settings(args))

        assert await call("init-db") == {"status": "ok"}
        opened = await call("open-epoch", "--start", "2026-01-01T00:00:00Z", "--end", "2026-01-08T00:00:00Z")
        epoch_id = opened["epoch"]["id"]
        assert opened["created"] is True
        assert opened["epoch"]["scope_id"] == "cli"

        pool = await call("record-pool", str(epoch_id), "--amount", "500")
        assert pool["amount_credits"] == 500

        curated = await call("curate", str(epoch_id))
        assert curated["summary"]["total_facts"] == 0

        closed = await call("close-epoch", str(epoch_id))
        assert closed["created"] is True
        assert closed["statement"]["pool_total_credits"] == 500

        again = await call("close-epoch", str(epoch_id))
        assert again["created"] is False
        assert again["statement"]["id"] == closed["statement"]["id"]

        report = await call("verify", str(epoch_id))
        assert report["matches"] is True

    @pytest.mark.asyncio
    async def test_policy_file(self, db_url, clean_env):
        policy_file = clean_env / "policy.json"
        policy_file.write_text(json.dumps({"version": "custom", "weights": {"pr_merged": 7}}))
        parser = build_parser()
        for argv in (["init-db"], [
            "open-epoch",
            "--start", "2026-02-01T00:00:00+00:00",
            "--end", "2026-02-08T00:00:00+00:00",
            "--policy-file", str(policy_file),
        ]):
            args = parser.parse_args(_cli(db_url, *argv))
            result = await run(args, resolve_settings(args))
        assert result["epoch"]["weight_policy"] == {"version": "custom", "weights": {"pr_merged": 7}}


class TestMain:

    def test_ledger_error_exits_2(self, db_url, capsys):
        main(_cli(db_url, "init-db"))
        capsys.readouterr()
        with pytest.raises(SystemExit) as exc:
            main(_cli(db_url, "close-epoch", "12"))
        assert exc.value.code == 2
        assert '"error": "epoch_not_found"' in capsys.readouterr().out
