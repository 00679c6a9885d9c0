from __future__ import annotations

import re
from collections.abc import Callable
from typing import Optional

from intake.state.store import StateStore
from intake.utils.time_utils import now_ms

RATE_LIMIT_STATE_SCOPE = "rate-limit"
DEFAULT_RATE_LIMIT_MAX_KEYS = 5_000

_UNSAFE_PART_PATTERN = re.compile(r"[^a-z0-9_.-]")
_DASH_RUN_PATTERN = re.compile(r"-+")


class RateLimiter:
    """Fixed-window counter per scope key.

    The window starts on the first call and is not extended by later calls, so a
    burst of up to ``2 * max_count`` can straddle a window edge.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        max_keys: int = DEFAULT_RATE_LIMIT_MAX_KEYS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._max_keys = max_keys
        self._clock = clock

    async def is_rate_limited(self, scope_key: str, max_count: int, window_ms: int) -> bool:
        """Count this call against ``scope_key`` and report whether it is over the limit."""

        limit = max(1, int(max_count))
        window = max(1, int(window_ms))
        now = self._clock()

        record = await self._store.load(RATE_LIMIT_STATE_SCOPE, scope_key, now)
        if isinstance(record, dict) and isinstance(record.get("count"), int):
            count = record["count"] + 1
            started_at = int(record.get("windowStartedAt", now))
            expires_at = int(record.get("windowExpiresAt", now + window))
        else:
            count = 1
            started_at = now
            expires_at = now + window

        await self._store.save(
            RATE_LIMIT_STATE_SCOPE,
            scope_key,
            {"count": count, "windowStartedAt": started_at, "windowExpiresAt": expires_at},
            expires_at=expires_at,
            max_entries=self._max_keys,
        )
        return count > limit


def normalize_rate_limit_part(raw: Optional[str], fallback: str) -> str:
    """Lower-case and restrict a key component to ``[a-z0-9_.-]``, max 64 chars."""

    normalized = _UNSAFE_PART_PATTERN.sub("-", (raw or "").strip().lower())
    normalized = _DASH_RUN_PATTERN.sub("-", normalized)[:64]
    return normalized or fallback


def build_command_rate_limit_key(
    *,
    platform: str,
    owner: Optional[str],
    repo: Optional[str],
    number: int,
    user: Optional[str],
    command: Optional[str],
) -> str:
    """Build the per-user, per-command scope key for a change request."""

    return (
        f"{platform}:"
        f"{normalize_rate_limit_part(owner, 'unknown-owner')}/"
        f"{normalize_rate_limit_part(repo, 'unknown-repo')}:"
        f"pr:{number}:"
        f"user:{normalize_rate_limit_part(user, 'unknown-user')}:"
        f"cmd:{normalize_rate_limit_part(command, 'unknown-command')}"
    )
