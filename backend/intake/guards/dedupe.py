from __future__ import annotations

from collections.abc import Callable

from intake.core.fnv import fnv1a64_hex
from intake.state.store import StateStore
from intake.utils.time_utils import now_ms

DEDUPE_STATE_SCOPE = "dedupe"
DEFAULT_DEDUPE_MAX_ENTRIES = 20_000


class DedupGuard:
    """Answer "was this identity already accepted inside the window?".

    The check-then-set below is not atomic: two near-simultaneous callers (or two
    processes sharing a backend) can both be admitted. Delivery is at-most-once
    only under the single-writer assumption. Storage faults are absorbed by the
    store, so an outage degrades to "not duplicate".
    """

    def __init__(
        self,
        store: StateStore,
        *,
        max_entries: int = DEFAULT_DEDUPE_MAX_ENTRIES,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._max_entries = max_entries
        self._clock = clock

    @staticmethod
    def fingerprint(identity: str) -> str:
        return fnv1a64_hex(identity.strip())

    async def is_duplicate(self, identity: str, window_ms: int) -> bool:
        """Return True if ``identity`` was recorded less than ``window_ms`` ago.

        A first sighting is recorded and reported as not duplicate.
        """

        if not identity.strip():
            return False
        key = self.fingerprint(identity)
        window = max(1, int(window_ms))
        now = self._clock()

        existing = await self._store.load(DEDUPE_STATE_SCOPE, key, now)
        if existing is not None:
            return True

        await self._store.save(
            DEDUPE_STATE_SCOPE,
            key,
            {"seenAt": now},
            expires_at=now + window,
            max_entries=self._max_entries,
        )
        return False

    async def forget(self, identity: str) -> None:
        """Drop the record for ``identity`` so the next delivery is accepted."""

        if not identity.strip():
            return
        await self._store.delete(DEDUPE_STATE_SCOPE, self.fingerprint(identity))
