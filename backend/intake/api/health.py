from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse

from intake.schemas.health import (
    DispatchStatsOut,
    HealthChecks,
    HealthStatus,
    StateStatsOut,
)
from intake.services.runtime import IntakeRuntime

router = APIRouter(tags=["health"])

SERVICE_NAME = "review-intake"
_DEEP_VALUES = {"1", "true", "yes", "on", "deep"}

_METRIC_DEFINITIONS = (
    ("review_intake_process_uptime_seconds", "gauge", "Process uptime in seconds."),
    ("review_intake_dispatch_active", "gauge", "Number of active dispatch slots."),
    ("review_intake_dispatch_queue_size", "gauge", "Number of callers waiting for a slot."),
    (
        "review_intake_shutdown_requested",
        "gauge",
        "Whether shutdown has been requested (1 or 0).",
    ),
    (
        "review_intake_runtime_state_backend_info",
        "gauge",
        "Runtime state backend info metric (always 1 for selected backend).",
    ),
)


def get_runtime(request: Request) -> IntakeRuntime:
    """Dependency to access the app intake runtime."""

    return request.app.state.runtime


def is_deep_health_query(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in _DEEP_VALUES


@router.get("/health", response_model=HealthStatus, response_model_exclude_none=True)
async def health(
    deep: Optional[str] = Query(default=None),
    runtime: IntakeRuntime = Depends(get_runtime),
) -> HealthStatus:
    """Report liveness; ``?deep=1`` adds dispatch and state store details."""

    status = HealthStatus(
        ok=not runtime.shutdown_flag.requested,
        name=SERVICE_NAME,
        mode=runtime.settings.app_env,
        backend=runtime.store.backend_name,
    )
    if not is_deep_health_query(deep):
        return status

    status.checks = HealthChecks(
        dispatch=DispatchStatsOut(**asdict(runtime.dispatch.stats())),
        state=StateStatsOut(**runtime.store.stats()),
    )
    return status


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(runtime: IntakeRuntime = Depends(get_runtime)) -> str:
    """Prometheus text exposition of runtime gauges."""

    stats = runtime.dispatch.stats()
    samples = {
        "review_intake_process_uptime_seconds": [("", round(runtime.uptime_seconds(), 3))],
        "review_intake_dispatch_active": [("", stats.active)],
        "review_intake_dispatch_queue_size": [("", stats.queued)],
        "review_intake_shutdown_requested": [("", 1 if stats.shutting_down else 0)],
        "review_intake_runtime_state_backend_info": [
            (f'{{backend="{runtime.store.backend_name}"}}', 1)
        ],
    }
    lines: list[str] = []
    for name, metric_type, help_text in _METRIC_DEFINITIONS:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        for labels, value in samples[name]:
            lines.append(f"{name}{labels} {value}")
    return "\n".join(lines) + "\n"
