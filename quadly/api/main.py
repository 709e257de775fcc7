"""
FastAPI application for Quadly.

This module wires the core services together in the application lifespan,
registers the routers, and maps each core error kind to an HTTP response.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from quadly import __version__
from quadly.config import AppConfig, get_config
from quadly.core.aggregator import StatusAggregator
from quadly.core.broadcaster import StatusBroadcaster
from quadly.core.quadlet_manager import QuadletManager
from quadly.core.shutdown_handler import GracefulShutdownHandler
from quadly.core.store import QuadletStore
from quadly.shared.exceptions import (
    QuadlyError, QuadletParseError, QuadletValidationError, QuadletNotFoundError,
    QuadletConflictError, StorageError, ServiceManagerConnectionError,
    UnitNotFoundError, UnitOperationError, QueryError, BroadcasterStateError
)
from quadly.shared.interfaces import IServiceManager
from quadly.shared.logging_config import log_structured_error

logger = logging.getLogger(__name__)

# Most specific classes first
ERROR_STATUS_CODES = (
    (QuadletParseError, 422),
    (QuadletValidationError, 422),
    (QuadletNotFoundError, 404),
    (UnitNotFoundError, 404),
    (QuadletConflictError, 409),
    (ServiceManagerConnectionError, 503),
    (BroadcasterStateError, 503),
    (UnitOperationError, 502),
    (QueryError, 502),
    (StorageError, 500),
)


def status_code_for(error: QuadlyError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


def build_quadlet_manager(config: AppConfig,
                          service_manager: Optional[IServiceManager] = None) -> QuadletManager:
    """Assemble the core services from configuration."""
    if service_manager is None:
        from quadly.core.systemd import SystemdUserClient
        service_manager = SystemdUserClient()

    store = QuadletStore(config.quadlets.directory, service_manager)
    aggregator = StatusAggregator(
        service_manager,
        query_timeout=config.monitoring.query_timeout,
        retries=config.monitoring.query_retries
    )
    broadcaster = StatusBroadcaster(
        aggregator,
        poll_interval=config.monitoring.poll_interval,
        buffer_size=config.monitoring.subscriber_buffer
    )
    return QuadletManager(store, service_manager, aggregator, broadcaster)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager with graceful shutdown support."""
    logger.info("Starting Quadly...")
    config = get_config()

    shutdown_handler = GracefulShutdownHandler(shutdown_timeout=config.server.shutdown_timeout)

    manager: Optional[QuadletManager] = getattr(app.state, "quadlet_manager", None)
    if manager is None:
        manager = build_quadlet_manager(config)
        app.state.quadlet_manager = manager

    try:
        await manager.track_existing()
    except QuadlyError as e:
        log_structured_error(logger, e, level=logging.WARNING)

    if app.state.start_polling:
        manager.broadcaster.start()

    shutdown_handler.register_cleanup_task(manager.broadcaster.stop)
    shutdown_handler.register_cleanup_task(manager.service_manager.close)

    app.state.shutdown_handler = shutdown_handler
    app.state.startup_time = time.time()
    logger.info(f"Quadly ready, managing {config.quadlets.directory}")

    yield

    logger.info("Initiating graceful shutdown...")
    await shutdown_handler.initiate_shutdown()


def create_app(manager: Optional[QuadletManager] = None, start_polling: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        manager: Pre-built manager (tests inject one backed by a fake)
        start_polling: Whether the lifespan starts the status poller
    """
    from quadly.api.health import router as health_router
    from quadly.api.quadlets import router as quadlets_router

    app = FastAPI(
        title="Quadly API",
        description="Manage Podman quadlets through the user systemd instance",
        version=__version__,
        lifespan=lifespan
    )
    app.state.start_polling = start_polling
    if manager is not None:
        app.state.quadlet_manager = manager

    @app.exception_handler(QuadlyError)
    async def quadly_error_handler(request: Request, exc: QuadlyError):
        status_code = status_code_for(exc)
        level = logging.ERROR if status_code >= 500 else logging.INFO
        log_structured_error(logger, exc, level=level)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(health_router, tags=["health"])
    app.include_router(quadlets_router, tags=["quadlets"])

    return app
