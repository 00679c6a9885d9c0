from __future__ import annotations

from typing import Optional

from intake.schemas.common import APIModel


class DispatchStatsOut(APIModel):
    """Live dispatch counters."""

    active: int
    queued: int
    max_concurrent: int
    shutting_down: bool


class StateStatsOut(APIModel):
    """State store summary."""

    backend: str
    loaded: bool
    scopes: dict[str, int]


class HealthChecks(APIModel):
    dispatch: DispatchStatsOut
    state: StateStatsOut


class HealthStatus(APIModel):
    """Health endpoint response."""

    ok: bool
    name: str
    mode: str
    backend: str
    checks: Optional[HealthChecks] = None
