"""
Deterministic in-memory service manager.

InMemoryServiceManager implements the same capability interface as the
session-bus client without a live systemd. Statuses can be scripted per unit,
failures injected, and every call is recorded so tests can assert on the
order and job mode of submitted lifecycle requests.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from quadly.shared.exceptions import (
    ServiceManagerConnectionError, UnitNotFoundError, QuadlyError
)
from quadly.shared.interfaces import IServiceManager
from quadly.shared.models import UnitStatus

logger = logging.getLogger(__name__)


class InMemoryServiceManager(IServiceManager):
    """Fake service manager keeping unit state in dictionaries."""

    def __init__(self, units: Optional[Iterable[str]] = None, latency: float = 0.0):
        self.statuses: Dict[str, UnitStatus] = {ref: UnitStatus.INACTIVE for ref in (units or [])}
        self.scripts: Dict[str, Deque[UnitStatus]] = {}
        self.failures: Dict[str, QuadlyError] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.logs: Dict[str, List[str]] = {}
        self.reload_count = 0
        self.connected = True
        self.latency = latency
        self.unit_source: Optional[Callable[[], Iterable[str]]] = None

    def add_unit(self, ref: str, status: UnitStatus = UnitStatus.INACTIVE) -> None:
        self.statuses[ref] = status

    def remove_unit(self, ref: str) -> None:
        self.statuses.pop(ref, None)
        self.scripts.pop(ref, None)

    def script_statuses(self, ref: str, sequence: Iterable[UnitStatus]) -> None:
        """Return ``sequence`` from successive get_status calls, then hold the last."""
        self.scripts[ref] = deque(sequence)
        if ref not in self.statuses:
            self.statuses[ref] = UnitStatus.UNKNOWN

    def fail_unit(self, ref: str, error: Optional[QuadlyError] = None) -> None:
        self.failures[ref] = error or UnitNotFoundError(ref, operation="GetStatus")

    def clear_failure(self, ref: str) -> None:
        self.failures.pop(ref, None)

    async def _enter(self, operation: str, ref: Optional[str] = None, mode: Optional[str] = None):
        self.calls.append((operation, ref, mode))
        delay = self.delays.get(ref, self.latency) if ref else self.latency
        if delay:
            await asyncio.sleep(delay)
        if not self.connected:
            raise ServiceManagerConnectionError("Session bus is unreachable")

    def _require(self, ref: str, operation: str) -> None:
        if ref in self.failures:
            raise self.failures[ref]
        if ref not in self.statuses:
            raise UnitNotFoundError(ref, operation=operation)

    async def reload(self) -> None:
        await self._enter("Reload")
        self.reload_count += 1
        logger.debug(f"In-memory reload #{self.reload_count}")
        if self.unit_source is not None:
            current: Set[str] = set(self.unit_source())
            for ref in current - set(self.statuses):
                self.statuses[ref] = UnitStatus.INACTIVE
            for ref in set(self.statuses) - current:
                self.remove_unit(ref)

    async def list_units(self) -> List[str]:
        await self._enter("ListUnits")
        return sorted(self.statuses)

    async def start(self, ref: str) -> None:
        await self._enter("StartUnit", ref, "replace")
        self._require(ref, "StartUnit")
        self.statuses[ref] = UnitStatus.ACTIVE

    async def stop(self, ref: str) -> None:
        await self._enter("StopUnit", ref, "replace")
        self._require(ref, "StopUnit")
        self.statuses[ref] = UnitStatus.INACTIVE

    async def restart(self, ref: str) -> None:
        await self._enter("RestartUnit", ref, "replace")
        self._require(ref, "RestartUnit")
        self.statuses[ref] = UnitStatus.ACTIVE

    async def get_status(self, ref: str) -> UnitStatus:
        await self._enter("GetStatus", ref)
        self._require(ref, "GetStatus")
        script = self.scripts.get(ref)
        if script:
            self.statuses[ref] = script.popleft()
        return self.statuses[ref]

    async def get_unit_logs(self, ref: str, lines: int = 50) -> str:
        await self._enter("Logs", ref)
        self._require(ref, "Logs")
        entries = self.logs.get(ref, [])
        return "\n".join(entries[-lines:]) if lines else ""

    async def close(self) -> None:
        self.calls.append(("Close", None, None))
