from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

SNAPSHOT_VERSION = 1


@dataclass
class StateEntry:
    """One expiring value inside a scope."""

    value: Any
    expires_at: int
    updated_at: int


@dataclass
class StateSnapshot:
    """Versioned aggregate of every scope; the unit of file persistence."""

    version: int = SNAPSHOT_VERSION
    scopes: dict[str, dict[str, StateEntry]] = field(default_factory=dict)

    def scope_sizes(self) -> dict[str, int]:
        return {name: len(entries) for name, entries in sorted(self.scopes.items())}


@dataclass(frozen=True)
class MemoryBackendConfig:
    """Keep state in process memory only."""

    name: str = "memory"


@dataclass(frozen=True)
class FileBackendConfig:
    """Persist the whole snapshot as one JSON document."""

    path: Path
    name: str = "file"


@dataclass(frozen=True)
class SqliteBackendConfig:
    """Persist entries as rows of an embedded SQLite database."""

    path: Path
    name: str = "sqlite"


StateBackendConfig = Union[MemoryBackendConfig, FileBackendConfig, SqliteBackendConfig]
