from __future__ import annotations

import uvicorn

from intake.core.config import get_settings
from intake.main import app


def main() -> None:
    """Serve the operational endpoints with uvicorn."""

    settings = get_settings()
    config = uvicorn.Config(
        app, host=settings.app_host, port=settings.app_port, log_level="info"
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
