from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from intake.providers.transport import RetryPolicy
from intake.state.types import (
    FileBackendConfig,
    MemoryBackendConfig,
    SqliteBackendConfig,
    StateBackendConfig,
)

StateBackendName = Literal["memory", "file", "sqlite"]
DedupCategory = Literal["interactive", "lifecycle"]

_BACKEND_ALIASES = {
    "memory": "memory",
    "mem": "memory",
    "file": "file",
    "fs": "file",
    "sqlite": "sqlite",
    "embedded-db": "sqlite",
    "db": "sqlite",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    state_backend: StateBackendName = Field(default="memory", alias="RUNTIME_STATE_BACKEND")
    state_file: str = Field(default=".review-intake-state.json", alias="RUNTIME_STATE_FILE")
    state_sqlite_file: str = Field(
        default=".review-intake-state.sqlite3", alias="RUNTIME_STATE_SQLITE_FILE"
    )
    state_prune_interval_ms: int = Field(
        default=1_000, ge=0, alias="RUNTIME_STATE_PRUNE_INTERVAL_MS"
    )
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    state_scope_prune_intervals: str = Field(
        default="", alias="RUNTIME_STATE_SCOPE_PRUNE_INTERVALS"
    )

    dedupe_ttl_ms: int = Field(default=5 * 60 * 1_000, ge=1, alias="DEDUPE_TTL_MS")
    merged_dedupe_ttl_ms: int = Field(
        default=24 * 60 * 60 * 1_000, ge=1, alias="MERGED_DEDUPE_TTL_MS"
    )
    dedupe_max_entries: int = Field(default=20_000, ge=1, alias="DEDUPE_MAX_ENTRIES")

    command_rate_limit_max: int = Field(default=10, ge=1, alias="COMMAND_RATE_LIMIT_MAX")
    command_rate_limit_window_ms: int = Field(
        default=60 * 60 * 1_000, ge=1_000, alias="COMMAND_RATE_LIMIT_WINDOW_MS"
    )
    rate_limit_max_keys: int = Field(default=5_000, ge=1, alias="RATE_LIMIT_MAX_KEYS")

    ai_max_concurrency: int = Field(default=4, ge=1, alias="AI_MAX_CONCURRENCY")
    ai_shutdown_drain_timeout_ms: int = Field(
        default=15_000, ge=0, alias="AI_SHUTDOWN_DRAIN_TIMEOUT_MS"
    )

    http_retries: int = Field(default=2, ge=0, alias="HTTP_RETRIES")
    http_retry_backoff_ms: int = Field(default=400, ge=0, alias="HTTP_RETRY_BACKOFF_MS")
    http_timeout_ms: int = Field(default=30_000, ge=1, alias="HTTP_TIMEOUT_MS")
    http_retry_statuses: str = Field(
        default="408,409,425,429,500,502,503,504", alias="HTTP_RETRY_STATUSES"
    )

    max_patch_chars_per_file: int = Field(
        default=4_000, ge=1, alias="MAX_PATCH_CHARS_PER_FILE"
    )

    ask_session_ttl_ms: int = Field(default=2 * 60 * 60 * 1_000, ge=1, alias="ASK_SESSION_TTL_MS")
    ask_session_max_turns: int = Field(default=6, ge=1, alias="ASK_SESSION_MAX_TURNS")
    ask_session_max_entries: int = Field(default=2_000, ge=1, alias="ASK_SESSION_MAX_ENTRIES")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    @field_validator("state_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return _BACKEND_ALIASES.get(normalized, normalized)
        return value

    def state_backend_config(self) -> StateBackendConfig:
        """Return the persistence backend selected for this process."""

        if self.state_backend == "file":
            return FileBackendConfig(path=Path(self.state_file).resolve())
        if self.state_backend == "sqlite":
            return SqliteBackendConfig(path=Path(self.state_sqlite_file).resolve())
        return MemoryBackendConfig()

    def scope_prune_intervals(self) -> dict[str, int]:
        """Parse per-scope prune interval overrides.

        Format is ``scope=ms`` pairs separated by commas. Malformed pairs are skipped.
        """

        overrides: dict[str, int] = {}
        for chunk in (self.state_scope_prune_intervals or "").split(","):
            scope, sep, raw_ms = chunk.partition("=")
            if not sep or not scope.strip():
                continue
            try:
                interval = int(raw_ms.strip())
            except ValueError:
                continue
            if interval >= 0:
                overrides[scope.strip()] = interval
        return overrides

    def parsed_retry_statuses(self) -> frozenset[int]:
        statuses: set[int] = set()
        for item in (self.http_retry_statuses or "").split(","):
            item = item.strip()
            if item.isdigit():
                statuses.add(int(item))
        return frozenset(statuses)

    def retry_policy(self) -> RetryPolicy:
        """Return the default HTTP retry policy."""

        return RetryPolicy(
            retries=self.http_retries,
            backoff_ms=self.http_retry_backoff_ms,
            timeout_ms=self.http_timeout_ms,
            retry_on_statuses=self.parsed_retry_statuses(),
        )

    def dedupe_window_ms(self, category: DedupCategory) -> int:
        """Return the dedup window for a caller category."""

        if category == "lifecycle":
            return self.merged_dedupe_ttl_ms
        return self.dedupe_ttl_ms


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
