"""
Health check endpoint for Quadly.

Reports liveness together with the state of the status poller, so a
supervisor can tell a running server from one whose poller has stopped.
"""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from quadly import __version__
from quadly.core.broadcaster import BroadcasterState

logger = logging.getLogger(__name__)

router = APIRouter()


def get_current_timestamp() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check(request: Request):
    """
    Returns 200 while the poller runs, 503 while shutting down or if the
    poller is not running when it should be.
    """
    state = request.app.state
    manager = state.quadlet_manager
    shutdown = state.shutdown_handler.get_shutdown_status()
    broadcaster = manager.broadcaster

    polling = broadcaster.state is BroadcasterState.POLLING
    healthy = shutdown["status"] == "running" and (polling or not state.start_polling)

    response = {
        "status": "healthy" if healthy else "unhealthy",
        "service": "quadly",
        "version": __version__,
        "uptime_seconds": round(time.time() - state.startup_time, 2),
        "timestamp": get_current_timestamp(),
        "broadcaster": {
            "state": broadcaster.state.value,
            "tracked_units": len(broadcaster.tracked_units),
            "subscribers": broadcaster.subscriber_count,
            "cycles": broadcaster.cycles
        },
        "shutdown": shutdown
    }
    if not healthy:
        logger.warning(f"Health check failed: {response['broadcaster']['state']}, {shutdown['status']}")
    return JSONResponse(status_code=200 if healthy else 503, content=response)
