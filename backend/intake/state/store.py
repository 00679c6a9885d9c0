from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Collection, Mapping
from typing import Any, Optional

from intake.core.errors import StorageFault
from intake.state.backends import StateBackend
from intake.state.types import StateEntry, StateSnapshot
from intake.utils.time_utils import now_ms

logger = logging.getLogger(__name__)

MAX_SCOPE_LENGTH = 80
MAX_KEY_LENGTH = 240
DEFAULT_PRUNE_INTERVAL_MS = 1_000


class StateStore:
    """Scoped, TTL-expiring key/value store with a pluggable persistence backend.

    The in-memory snapshot is authoritative for the lifetime of the store. It is
    loaded from the backend once, on first access, and written back best-effort
    after every mutation; backend faults are logged and never raised. File and
    SQLite backends assume a single active writer process.
    """

    def __init__(
        self,
        backend: StateBackend,
        *,
        prune_interval_ms: int = DEFAULT_PRUNE_INTERVAL_MS,
        scope_prune_intervals: Optional[Mapping[str, int]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._prune_interval_ms = max(0, int(prune_interval_ms))
        self._scope_prune_intervals = {
            _normalize_scope(scope): max(0, int(interval))
            for scope, interval in (scope_prune_intervals or {}).items()
        }
        self._snapshot = StateSnapshot()
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._scope_locks: dict[str, asyncio.Lock] = {}
        self._last_prune_at: dict[str, int] = {}

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self, scope: str, key: str, now: Optional[int] = None) -> Any:
        """Return the live value stored under ``scope``/``key`` or None.

        An expired entry is removed and reported absent. The rest of the scope is
        pruned at most once per prune interval.
        """

        scope_name = _normalize_scope(scope)
        state_key = _normalize_key(key)
        if not scope_name or not state_key:
            return None

        await self._ensure_loaded()
        current = self._clock() if now is None else int(now)
        async with self._lock_for(scope_name):
            changed = self._prune_scope(scope_name, current)
            entries = self._snapshot.scopes.get(scope_name)
            entry = entries.get(state_key) if entries else None
            if entry is not None and entry.expires_at <= current:
                self._remove(scope_name, state_key)
                entry = None
                changed = True
            if changed:
                await self._persist((scope_name,))
            if entry is None:
                return None
            return copy.deepcopy(entry.value)

    async def save(
        self,
        scope: str,
        key: str,
        value: Any,
        expires_at: int,
        max_entries: Optional[int] = None,
    ) -> None:
        """Store ``value`` until ``expires_at`` (epoch ms).

        When ``max_entries`` is given and exceeded, the least recently updated
        entries of the scope are evicted first.
        """

        scope_name = _normalize_scope(scope)
        state_key = _normalize_key(key)
        if not scope_name or not state_key:
            return

        await self._ensure_loaded()
        current = self._clock()
        async with self._lock_for(scope_name):
            entries = self._snapshot.scopes.setdefault(scope_name, {})
            entries.pop(state_key, None)
            entries[state_key] = StateEntry(
                value=copy.deepcopy(value),
                expires_at=int(expires_at),
                updated_at=current,
            )
            self._prune_scope(scope_name, current)
            self._trim_scope(scope_name, max_entries)
            await self._persist((scope_name,))

    async def delete(self, scope: str, key: str) -> None:
        scope_name = _normalize_scope(scope)
        state_key = _normalize_key(key)
        if not scope_name or not state_key:
            return

        await self._ensure_loaded()
        async with self._lock_for(scope_name):
            if not self._remove(scope_name, state_key):
                return
            await self._persist((scope_name,))

    async def clear_scope(self, scope: str) -> None:
        scope_name = _normalize_scope(scope)
        if not scope_name:
            return

        await self._ensure_loaded()
        async with self._lock_for(scope_name):
            self._last_prune_at.pop(scope_name, None)
            if self._snapshot.scopes.pop(scope_name, None) is None:
                return
            await self._persist((scope_name,))

    def stats(self) -> dict[str, Any]:
        """Return a read-only summary for health reporting."""

        return {
            "backend": self._backend.name,
            "loaded": self._loaded,
            "scopes": self._snapshot.scope_sizes(),
        }

    async def close(self) -> None:
        await self._backend.close()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            try:
                self._snapshot = await self._backend.load()
            except StorageFault as exc:
                logger.warning("Runtime state load failed, starting empty: %s", exc.message)
                self._snapshot = StateSnapshot()
            self._loaded = True

    def _lock_for(self, scope_name: str) -> asyncio.Lock:
        lock = self._scope_locks.get(scope_name)
        if lock is None:
            lock = asyncio.Lock()
            self._scope_locks[scope_name] = lock
        return lock

    def _prune_scope(self, scope_name: str, now: int) -> bool:
        entries = self._snapshot.scopes.get(scope_name)
        if not entries:
            return False
        interval = self._scope_prune_intervals.get(scope_name, self._prune_interval_ms)
        last = self._last_prune_at.get(scope_name)
        if last is not None and now - last < interval:
            return False
        self._last_prune_at[scope_name] = now

        expired = [key for key, entry in entries.items() if entry.expires_at <= now]
        for key in expired:
            del entries[key]
        if not entries:
            del self._snapshot.scopes[scope_name]
        return bool(expired)

    def _trim_scope(self, scope_name: str, max_entries: Optional[int]) -> None:
        entries = self._snapshot.scopes.get(scope_name)
        if not entries or max_entries is None:
            return
        limit = max(1, int(max_entries))
        overflow = len(entries) - limit
        if overflow <= 0:
            return
        # sorted() is stable, so equal timestamps evict in insertion order.
        oldest = sorted(entries.items(), key=lambda item: item[1].updated_at)[:overflow]
        for key, _ in oldest:
            del entries[key]

    def _remove(self, scope_name: str, state_key: str) -> bool:
        entries = self._snapshot.scopes.get(scope_name)
        if not entries or state_key not in entries:
            return False
        del entries[state_key]
        if not entries:
            del self._snapshot.scopes[scope_name]
        return True

    async def _persist(self, scopes: Collection[str]) -> None:
        try:
            await self._backend.persist(self._snapshot, scopes)
        except StorageFault as exc:
            logger.warning("Runtime state persistence failed (%s): %s", exc.backend, exc.message)


def _normalize_scope(scope: str) -> str:
    return scope.strip()[:MAX_SCOPE_LENGTH]


def _normalize_key(key: str) -> str:
    return key.strip()[:MAX_KEY_LENGTH]
