from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

import httpx

from intake.core.config import DedupCategory, Settings
from intake.core.lifecycle import ShutdownFlag
from intake.guards.conversation import ConversationMemory
from intake.guards.dedupe import DedupGuard
from intake.guards.rate_limit import RateLimiter
from intake.providers.transport import RetryingTransport
from intake.services.dispatch import DispatchController
from intake.services.shutdown import ShutdownCoordinator
from intake.state.backends import create_backend
from intake.state.store import StateStore
from intake.utils.time_utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class IntakeRuntime:
    """Every reliability component, wired around one state store and one shutdown flag."""

    settings: Settings
    store: StateStore
    dedupe: DedupGuard
    rate_limiter: RateLimiter
    conversations: ConversationMemory
    dispatch: DispatchController
    transport: RetryingTransport
    shutdown_flag: ShutdownFlag
    coordinator: ShutdownCoordinator
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], int] = now_ms,
    ) -> "IntakeRuntime":
        backend_config = settings.state_backend_config()
        store = StateStore(
            create_backend(backend_config),
            prune_interval_ms=settings.state_prune_interval_ms,
            scope_prune_intervals=settings.scope_prune_intervals(),
            clock=clock,
        )
        flag = ShutdownFlag()
        dispatch = DispatchController(settings.ai_max_concurrency, shutdown=flag)
        logger.info(
            "Intake runtime configured: state backend=%s, max concurrency=%s",
            backend_config.name,
            settings.ai_max_concurrency,
        )
        return cls(
            settings=settings,
            store=store,
            dedupe=DedupGuard(store, max_entries=settings.dedupe_max_entries, clock=clock),
            rate_limiter=RateLimiter(store, max_keys=settings.rate_limit_max_keys, clock=clock),
            conversations=ConversationMemory(
                store,
                ttl_ms=settings.ask_session_ttl_ms,
                max_turns=settings.ask_session_max_turns,
                max_entries=settings.ask_session_max_entries,
                clock=clock,
            ),
            dispatch=dispatch,
            transport=RetryingTransport(
                http_client, policy=settings.retry_policy(), shutdown=flag
            ),
            shutdown_flag=flag,
            coordinator=ShutdownCoordinator(
                flag, dispatch, drain_timeout_ms=settings.ai_shutdown_drain_timeout_ms
            ),
        )

    async def is_duplicate_event(self, identity: str, category: DedupCategory) -> bool:
        """Dedup check using the window configured for ``category``."""

        return await self.dedupe.is_duplicate(identity, self.settings.dedupe_window_ms(category))

    async def is_command_rate_limited(self, scope_key: str) -> bool:
        """Rate-limit check using the configured command budget."""

        return await self.rate_limiter.is_rate_limited(
            scope_key,
            self.settings.command_rate_limit_max,
            self.settings.command_rate_limit_window_ms,
        )

    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at

    async def aclose(self, reason: str = "shutdown") -> bool:
        """Shut down, drain, then release transport and store resources."""

        drained = await self.coordinator.shutdown(reason)
        await self.transport.aclose()
        await self.store.close()
        return drained
