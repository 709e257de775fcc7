"""
Status Aggregator for Quadly.

Fans out one status query per unit concurrently, so the latency of a batch is
bounded by its slowest unit rather than the sum. Each query is isolated: a
failure for one unit becomes that unit's QueryError and never aborts or
taints the results of the others.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Union

from quadly.shared.exceptions import (
    ErrorCode, QueryError, QuadlyError, ServiceManagerConnectionError
)
from quadly.shared.interfaces import IUnitSurface
from quadly.shared.models import UnitStatus

logger = logging.getLogger(__name__)

StatusResult = Union[UnitStatus, QueryError]


class StatusAggregator:
    """
    Concurrent, failure-isolating status reader.

    Read-path retries live here rather than in the client: a query that fails
    with a connection error or times out is retried up to ``retries`` times.
    Unit errors (no such unit, rejected call) are never retried.
    """

    def __init__(self, manager: IUnitSurface, query_timeout: float = 5.0, retries: int = 0):
        if query_timeout <= 0:
            raise ValueError("query_timeout must be positive")
        if retries < 0:
            raise ValueError("retries cannot be negative")
        self.manager = manager
        self.query_timeout = query_timeout
        self.retries = retries

    async def query_one(self, ref: str) -> StatusResult:
        """Query a single unit, returning its status or its QueryError."""
        attempts = self.retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(self.manager.get_status(ref), timeout=self.query_timeout)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.debug(f"Status query for {ref} timed out (attempt {attempt}/{attempts})")
            except ServiceManagerConnectionError as e:
                last_error = e
                logger.debug(f"Status query for {ref} could not connect (attempt {attempt}/{attempts})")
            except QuadlyError as e:
                return QueryError(f"Status query for {ref} failed: {e.message}", unit=ref, cause=e)
            except Exception as e:
                logger.error(f"Unexpected error querying {ref}: {e}")
                return QueryError(f"Status query for {ref} failed: {e}", unit=ref, cause=e)

        if isinstance(last_error, asyncio.TimeoutError):
            return QueryError(
                f"Status query for {ref} timed out after {self.query_timeout}s",
                unit=ref,
                error_code=ErrorCode.MANAGER_QUERY_TIMEOUT,
                cause=last_error
            )
        return QueryError(
            f"Status query for {ref} failed: {last_error}",
            unit=ref,
            cause=last_error
        )

    async def query_many(self, refs: Iterable[str]) -> Dict[str, StatusResult]:
        """
        Query every unit in ``refs`` concurrently.

        Returns:
            Mapping of every requested ref to its UnitStatus or QueryError.
            No ordering between units is implied.
        """
        unique = list(dict.fromkeys(refs))
        if not unique:
            return {}

        results = await asyncio.gather(*(self.query_one(ref) for ref in unique))
        mapping = dict(zip(unique, results))

        failed = sum(1 for r in results if isinstance(r, QueryError))
        if failed:
            logger.debug(f"Status batch: {len(unique) - failed} ok, {failed} failed")
        return mapping
