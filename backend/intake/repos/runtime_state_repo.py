from __future__ import annotations

import json
from collections.abc import Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from intake.db.models import RuntimeStateRow
from intake.state.types import StateEntry


class RuntimeStateRepo:
    """Repository for runtime state rows."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def list_rows(self) -> list[RuntimeStateRow]:
        """Return every stored row ordered by scope and key."""

        result = await self._db.execute(
            select(RuntimeStateRow).order_by(RuntimeStateRow.scope, RuntimeStateRow.key)
        )
        return list(result.scalars().all())

    async def replace_scope(self, scope: str, entries: Mapping[str, StateEntry]) -> None:
        """Replace every row of ``scope`` with ``entries``."""

        await self._db.execute(delete(RuntimeStateRow).where(RuntimeStateRow.scope == scope))
        for key, entry in entries.items():
            self._db.add(
                RuntimeStateRow(
                    scope=scope,
                    key=key,
                    value=json.dumps(entry.value, separators=(",", ":")),
                    expires_at=int(entry.expires_at),
                    updated_at=int(entry.updated_at),
                )
            )
        await self._db.flush()
