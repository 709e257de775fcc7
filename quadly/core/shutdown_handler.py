"""
Orderly shutdown for the Quadly server.

Mutating requests run inside :meth:`GracefulShutdownHandler.operation_context`
so that a quadlet write or reload in flight when the process is told to stop
gets a bounded grace period. After that the poller is stopped, subscriber
streams end and the session-bus connection is closed, via the cleanup
callables registered at startup.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List, Optional, Set, Union

logger = logging.getLogger(__name__)

Cleanup = Callable[[], Union[None, Awaitable[None]]]


def _label(func) -> str:
    return getattr(func, "__qualname__", None) or repr(func)


class GracefulShutdownHandler:
    """Tracks in-flight operations and runs cleanup callables once, in order."""

    def __init__(self, shutdown_timeout: float = 30):
        self.shutdown_timeout = shutdown_timeout
        self.shutdown_event = asyncio.Event()
        self.cleanup_tasks: List[Cleanup] = []
        self._in_flight: Set[asyncio.Task] = set()
        self._started_at: Optional[float] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._started_at is not None

    def register_cleanup_task(self, cleanup_func: Cleanup):
        """Add a sync or async callable to run after in-flight work settles."""
        self.cleanup_tasks.append(cleanup_func)

    def register_active_operation(self, task: asyncio.Task):
        if task in self._in_flight:
            return
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    def is_shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    async def initiate_shutdown(self):
        if self.is_shutting_down:
            logger.warning("Shutdown already in progress")
            return

        self._started_at = time.monotonic()
        self.shutdown_event.set()
        logger.info("Shutting down: %d operation(s) in flight, %d cleanup step(s)",
                    len(self._in_flight), len(self.cleanup_tasks))

        await self._drain()
        for cleanup in self.cleanup_tasks:
            await self._run_cleanup(cleanup)

        logger.info("Shutdown finished after %.2fs", time.monotonic() - self._started_at)

    async def _drain(self):
        pending = self._in_flight - {asyncio.current_task()}
        if not pending:
            return

        _, overdue = await asyncio.wait(pending, timeout=self.shutdown_timeout)
        if overdue:
            logger.warning("Cancelling %d operation(s) still running after %ss",
                           len(overdue), self.shutdown_timeout)
            for task in overdue:
                task.cancel()
            await asyncio.gather(*overdue, return_exceptions=True)

    async def _run_cleanup(self, cleanup: Cleanup):
        try:
            outcome = cleanup()
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            # later steps still release their resources
            logger.error("Cleanup step %s failed: %s", _label(cleanup), e)
        else:
            logger.debug("Cleanup step %s done", _label(cleanup))

    @asynccontextmanager
    async def operation_context(self, operation_name: str = "operation"):
        """
        Mark the current task as in flight for the duration of the block.

        Raises RuntimeError once shutdown has begun::

            async with handler.operation_context("delete_quadlet"):
                await manager.delete(unit_type, name)
        """
        if self.is_shutdown_requested():
            raise RuntimeError(f"Service is shutting down; refusing {operation_name}")

        task = asyncio.current_task()
        if task is not None:
            self.register_active_operation(task)
        yield

    def get_shutdown_status(self) -> dict:
        status = {
            "status": "shutting_down" if self.is_shutting_down else "running",
            "active_operations": sum(1 for t in self._in_flight if not t.done()),
            "cleanup_tasks": len(self.cleanup_tasks),
        }
        if self.is_shutting_down:
            status["elapsed_time"] = time.monotonic() - self._started_at
            status["timeout"] = self.shutdown_timeout
        return status
