"""
Core interfaces for Quadly.

This module defines the abstract interfaces that components must implement
to ensure consistent behavior across the system. The service manager is
split into the manager surface (reload, listing) and the unit surface
(lifecycle and status) so either can be faked independently.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import QuadletDocument, UnitStatus, UnitType


class IManagerSurface(ABC):
    """Manager-level operations on the session service manager."""

    @abstractmethod
    async def reload(self) -> None:
        """Make the manager re-read unit definitions from disk."""
        pass

    @abstractmethod
    async def list_units(self) -> List[str]:
        """List loaded service units by name."""
        pass


class IUnitSurface(ABC):
    """Per-unit operations. Lifecycle calls use the ``replace`` job mode."""

    @abstractmethod
    async def start(self, ref: str) -> None:
        pass

    @abstractmethod
    async def stop(self, ref: str) -> None:
        pass

    @abstractmethod
    async def restart(self, ref: str) -> None:
        pass

    @abstractmethod
    async def get_status(self, ref: str) -> UnitStatus:
        """Current status of ``ref``; raises rather than guessing."""
        pass


class IServiceManager(IManagerSurface, IUnitSurface):
    """Full capability interface over the session service manager."""

    @abstractmethod
    async def get_unit_logs(self, ref: str, lines: int = 50) -> str:
        """Recent journal lines for ``ref``."""
        pass

    async def close(self) -> None:
        """Release the underlying connection, if any."""
        return None


class IQuadletStore(ABC):
    """Interface for persisting quadlet documents."""

    @abstractmethod
    async def save(self, doc: QuadletDocument) -> None:
        pass

    @abstractmethod
    async def read(self, name: str, unit_type: UnitType) -> QuadletDocument:
        pass

    @abstractmethod
    async def delete(self, name: str, unit_type: UnitType) -> None:
        pass

    @abstractmethod
    async def list(self, type_filter: Optional[UnitType] = None) -> List[QuadletDocument]:
        pass

    @abstractmethod
    async def exists(self, name: str, unit_type: UnitType) -> bool:
        pass
