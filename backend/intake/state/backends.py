from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Collection
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from intake.core.errors import StorageFault
from intake.db.base import create_engine, create_sessionmaker, init_db
from intake.repos.runtime_state_repo import RuntimeStateRepo
from intake.schemas.state import StateEntryDocument
from intake.state.types import (
    SNAPSHOT_VERSION,
    FileBackendConfig,
    MemoryBackendConfig,
    SqliteBackendConfig,
    StateBackendConfig,
    StateEntry,
    StateSnapshot,
)

logger = logging.getLogger(__name__)


class StateBackend(ABC):
    """Abstract persistence backend for the runtime state snapshot.

    Backends raise ``StorageFault`` on I/O failure; the store decides what to do with it.
    """

    name: str = "abstract"

    @abstractmethod
    async def load(self) -> StateSnapshot:
        """Read the persisted snapshot. A missing store yields an empty snapshot."""

    @abstractmethod
    async def persist(self, snapshot: StateSnapshot, scopes: Collection[str]) -> None:
        """Write the current state of ``scopes`` (or the whole snapshot)."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryStateBackend(StateBackend):
    """No persistence; state lives for the process lifetime only."""

    name = "memory"

    async def load(self) -> StateSnapshot:
        return StateSnapshot()

    async def persist(self, snapshot: StateSnapshot, scopes: Collection[str]) -> None:
        return None


class FileStateBackend(StateBackend):
    """Whole-snapshot JSON file, rewritten on every mutation."""

    name = "file"

    def __init__(self, path: Path) -> None:
        self._path = path
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> StateSnapshot:
        try:
            raw = await asyncio.to_thread(self._read_text)
        except OSError as exc:
            raise StorageFault(f"Failed to read state file {self._path}: {exc}", self.name) from exc
        except UnicodeDecodeError as exc:
            raise StorageFault(f"State file {self._path} is not valid UTF-8.", self.name) from exc
        if raw is None:
            return StateSnapshot()
        try:
            return parse_snapshot(json.loads(raw))
        except (ValueError, RecursionError) as exc:
            raise StorageFault(f"State file {self._path} is not valid JSON.", self.name) from exc

    async def persist(self, snapshot: StateSnapshot, scopes: Collection[str]) -> None:
        try:
            serialized = json.dumps(dump_snapshot(snapshot), separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise StorageFault(f"State snapshot is not serializable: {exc}", self.name) from exc
        try:
            async with self._write_lock:
                await asyncio.to_thread(self._write_text, serialized)
        except OSError as exc:
            raise StorageFault(f"Failed to write state file {self._path}: {exc}", self.name) from exc

    def _read_text(self) -> Optional[str]:
        if not self._path.exists():
            return None
        return self._path.read_text(encoding="utf-8")

    def _write_text(self, content: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, self._path)


class SqliteStateBackend(StateBackend):
    """Embedded SQLite table ``runtime_state(scope, key, value, expires_at, updated_at)``."""

    name = "sqlite"

    def __init__(self, path: Path) -> None:
        self._path = path
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> StateSnapshot:
        try:
            sessionmaker = await self._ensure_ready()
            async with sessionmaker() as db:
                rows = await RuntimeStateRepo(db).list_rows()
        except (SQLAlchemyError, OSError) as exc:
            raise StorageFault(f"Failed to read state database {self._path}: {exc}", self.name) from exc

        snapshot = StateSnapshot()
        for row in rows:
            try:
                value = json.loads(row.value)
            except ValueError:
                logger.warning("Skipping unreadable state row %s/%s", row.scope, row.key)
                continue
            snapshot.scopes.setdefault(row.scope, {})[row.key] = StateEntry(
                value=value, expires_at=int(row.expires_at), updated_at=int(row.updated_at)
            )
        return snapshot

    async def persist(self, snapshot: StateSnapshot, scopes: Collection[str]) -> None:
        try:
            sessionmaker = await self._ensure_ready()
            async with sessionmaker() as db:
                async with db.begin():
                    repo = RuntimeStateRepo(db)
                    for scope in sorted(scopes):
                        await repo.replace_scope(scope, snapshot.scopes.get(scope, {}))
        except (SQLAlchemyError, OSError, TypeError, ValueError) as exc:
            raise StorageFault(f"Failed to write state database {self._path}: {exc}", self.name) from exc

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    async def _ensure_ready(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is not None:
            return self._sessionmaker
        await asyncio.to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)
        engine = create_engine(f"sqlite+aiosqlite:///{self._path}")
        try:
            await init_db(engine)
        except BaseException:
            await engine.dispose()
            raise
        self._engine = engine
        self._sessionmaker = create_sessionmaker(engine)
        return self._sessionmaker


def create_backend(config: StateBackendConfig) -> StateBackend:
    """Build the backend for a backend variant selected at startup."""

    if isinstance(config, FileBackendConfig):
        return FileStateBackend(config.path)
    if isinstance(config, SqliteBackendConfig):
        return SqliteStateBackend(config.path)
    if isinstance(config, MemoryBackendConfig):
        return MemoryStateBackend()
    raise ValueError(f"Unsupported state backend config: {config!r}")


def parse_snapshot(payload: Any) -> StateSnapshot:
    """Build a snapshot from decoded JSON.

    A version mismatch discards the whole document; malformed entries are skipped.
    """

    if not isinstance(payload, dict) or payload.get("version") != SNAPSHOT_VERSION:
        logger.info("Discarding runtime state snapshot with unexpected schema version")
        return StateSnapshot()
    raw_scopes = payload.get("scopes")
    if not isinstance(raw_scopes, dict):
        return StateSnapshot()

    snapshot = StateSnapshot()
    for scope_name, raw_scope in raw_scopes.items():
        if not isinstance(raw_scope, dict):
            continue
        entries: dict[str, StateEntry] = {}
        for key, raw_entry in raw_scope.items():
            if not isinstance(raw_entry, dict):
                continue
            try:
                document = StateEntryDocument.model_validate(raw_entry)
            except ValidationError:
                continue
            entries[key] = StateEntry(
                value=document.value,
                expires_at=int(document.expires_at),
                updated_at=int(document.updated_at),
            )
        if entries:
            snapshot.scopes[scope_name] = entries
    return snapshot


def dump_snapshot(snapshot: StateSnapshot) -> dict[str, Any]:
    """Return the persisted layout ``{version, scopes:{name:{key:{value,expiresAt,updatedAt}}}}``."""

    return {
        "version": snapshot.version,
        "scopes": {
            scope_name: {
                key: {
                    "value": entry.value,
                    "expiresAt": entry.expires_at,
                    "updatedAt": entry.updated_at,
                }
                for key, entry in entries.items()
            }
            for scope_name, entries in snapshot.scopes.items()
        },
    }
