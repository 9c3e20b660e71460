"""Runtime settings loaded from the environment.

Variables use the ``EPOCHLEDGER_`` prefix with ``__`` between nested
sections, e.g. ``EPOCHLEDGER_HTTP__PORT=8300``.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HTTPSettings(BaseModel):
    """Read API listener."""

    host: str = "127.0.0.1"
    port: int = 8300


class WeightPolicySettings(BaseModel):
    """Default weight policy pinned into epochs opened from the CLI."""

    version: str = "v1"
    weights: dict[str, int] = Field(default_factory=lambda: {
        "pr_merged": 1000,
        "review_submitted": 500,
        "issue_closed": 300,
    })


class LedgerSettings(BaseSettings):
    """Ledger process configuration."""

    database_url: str = Field(
        "sqlite+aiosqlite:///epochledger.db",
        description="SQLAlchemy async URL (sqlite+aiosqlite or postgresql+asyncpg)",
    )
    scope_id: str = Field("default", min_length=1)
    sqlite_busy_timeout: float = Field(30.0, description="Seconds to wait on a locked SQLite file")
    echo_sql: bool = False

    http: HTTPSettings = Field(default_factory=HTTPSettings)
    weight_policy: WeightPolicySettings = Field(default_factory=WeightPolicySettings)
    base_issuance_credits: int = Field(10_000, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="EPOCHLEDGER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> LedgerSettings:
    """Get cached settings instance."""
    return LedgerSettings()


__all__ = ["HTTPSettings", "LedgerSettings", "WeightPolicySettings", "get_settings"]
