"""Entry point for the cart automation HTTP service.

Creates the FastAPI application, configures logging, and starts the uvicorn
server.
"""

from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

from common import setup_logging

from cart_automation.api import create_app
from cart_automation.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def build_app(settings: Settings | None = None) -> FastAPI:
    """Construct the fully-configured application."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.json_logs)

    app = create_app(settings)

    logger.info(
        "application_ready",
        service=settings.service_name,
        version=settings.service_version,
        state_file=str(settings.state_file),
        automation_backend=settings.automation_backend,
        slack_configured=bool(settings.slack_bot_token and settings.slack_channel_id),
        api_key_configured=bool(settings.api_key),
    )

    return app


def main() -> None:
    """Launch the cart automation server."""
    settings = get_settings()
    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
