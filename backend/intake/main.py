from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from intake.api import health as health_api
from intake.core.config import get_settings
from intake.core.logging import setup_logging
from intake.services.runtime import IntakeRuntime


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    runtime = IntakeRuntime.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.runtime.aclose("lifespan")

    app = FastAPI(lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(health_api.router)

    return app


app = create_app()
