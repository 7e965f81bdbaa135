"""
Tradefeed status server.

Runs one ConnectionManager inside a FastAPI app:
1. Connects on startup and subscribes the configured topics
2. Serves /health and /stream/status for monitoring
3. Disconnects cleanly on shutdown
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI

from .config import Config, print_startup_banner, setup_logging
from .manager import ConnectionManager
from .status import create_status_router


logger = logging.getLogger("tradefeed")


def _log_message(topic: str):
    def callback(data: Any) -> None:
        logger.info(f"[{topic}] {data}")
    return callback


def create_app(
    config: Optional[Config] = None,
    manager: Optional[ConnectionManager] = None
) -> FastAPI:
    """
    Build the status application.

    Args:
        config: Application config (defaults to Config.from_env())
        manager: Pre-built manager, mainly for tests
    """
    config = config or Config.from_env()
    manager = manager or ConnectionManager(config.stream)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown."""
        for topic in config.server.topics:
            manager.subscribe(topic, _log_message(topic))

        manager.connect()
        logger.info(f"Streaming client started for {config.stream.url}")

        yield

        logger.info("Shutting down...")
        manager.disconnect()

    app = FastAPI(
        title="Tradefeed",
        description="Resilient streaming subscription client",
        lifespan=lifespan
    )
    app.state.manager = manager
    app.include_router(create_status_router(manager))

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "stream_connected": manager.is_connected
        }

    return app


def main() -> None:
    import uvicorn

    config = Config.from_env()
    setup_logging(config.server.log_level)
    app = create_app(config)

    print_startup_banner(config.server.host, config.server.port, config.stream.url)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level="warning",  # Our logger handles it
        access_log=False,
    )
