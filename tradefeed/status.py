"""
Status endpoints for the streaming connection.

Exposes connection health and a manual reconnect action so an operator
can inspect or kick a stuck client without restarting the process.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from .manager import ConnectionManager


logger = logging.getLogger("tradefeed.status")


def create_status_router(manager: ConnectionManager) -> APIRouter:
    """Build the status routes bound to one manager."""
    router = APIRouter(prefix="/stream", tags=["Stream"])

    @router.get("/status")
    async def stream_status() -> JSONResponse:
        """
        Get streaming connection status.

        Returns:
            JSON with state, attempt, topics and traffic counters
        """
        return JSONResponse(content=manager.stats())

    @router.post("/reconnect")
    async def stream_reconnect() -> JSONResponse:
        """Drop the current connection and start a fresh attempt sequence."""
        previous = manager.state
        logger.info(f"Reconnect requested via status API (state={previous.value})")
        manager.reconnect()
        return JSONResponse(
            status_code=202,
            content={
                "previous_state": previous.value,
                "state": manager.state.value,
            }
        )

    return router
