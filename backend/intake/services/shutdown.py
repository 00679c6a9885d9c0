from __future__ import annotations

import logging
from typing import Optional

from intake.core.lifecycle import ShutdownFlag
from intake.services.dispatch import DispatchController

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Stop outbound work and wait for in-flight dispatches to finish."""

    def __init__(
        self,
        flag: ShutdownFlag,
        dispatch: DispatchController,
        *,
        drain_timeout_ms: int = 15_000,
    ) -> None:
        self._flag = flag
        self._dispatch = dispatch
        self._drain_timeout_ms = drain_timeout_ms
        self._drained: Optional[bool] = None

    async def shutdown(self, reason: str = "unknown") -> bool:
        """Flip the shared flag, reject queued work and drain. Safe to call twice."""

        if self._drained is not None:
            return self._drained
        self._flag.request()
        self._dispatch.begin_shutdown()
        drained = await self._dispatch.drain(self._drain_timeout_ms)
        if drained:
            logger.info("Application shutdown (%s): dispatch requests drained", reason)
        else:
            logger.warning(
                "Application shutdown (%s): timed out while draining %s active dispatch request(s)",
                reason,
                self._dispatch.active_count,
            )
        self._drained = drained
        return drained
