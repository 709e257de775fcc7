"""
Quadlet Management Service for Quadly.

This module implements the QuadletManager class, the facade the API layer
consumes: per-(type, name) CRUD on quadlet documents, lifecycle verbs on the
generated services, batch status queries and the live change stream.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from quadly.core.aggregator import StatusAggregator, StatusResult
from quadly.core.broadcaster import StatusBroadcaster, Subscription
from quadly.core.parser import parse_quadlet
from quadly.core.store import QuadletStore
from quadly.core.validator import QuadletValidator, SectionInput, build_document
from quadly.shared.exceptions import (
    QuadletConflictError, QuadletNotFoundError, QuadletValidationError, QuadlyError, ErrorCode,
    ServiceManagerConnectionError, UnitOperationError
)
from quadly.shared.interfaces import IServiceManager
from quadly.shared.logging_config import AuditLogger
from quadly.shared.models import (
    QuadletDocument, QuadletInfo, UnitType, is_valid_name, service_ref_for
)

logger = logging.getLogger(__name__)

QuadletContent = Union[str, bytes, Sequence[SectionInput]]

LIFECYCLE_ACTIONS = ("start", "stop", "restart")

# raised by the manager reload that follows a successful write
RELOAD_ERRORS = (ServiceManagerConnectionError, UnitOperationError)


class QuadletManager:
    """
    Coordinates the store, the service manager and the broadcaster.

    Saved quadlets are tracked by the broadcaster; deleted ones are untracked.
    """

    def __init__(self, store: QuadletStore, service_manager: IServiceManager,
                 aggregator: StatusAggregator, broadcaster: StatusBroadcaster,
                 audit: Optional[AuditLogger] = None):
        self.store = store
        self.service_manager = service_manager
        self.aggregator = aggregator
        self.broadcaster = broadcaster
        self.validator = store.validator
        self.audit = audit or AuditLogger()
        logger.info("QuadletManager initialized")

    def _build(self, unit_type: UnitType, name: str, content: QuadletContent) -> QuadletDocument:
        if not unit_type.is_concrete:
            raise QuadletValidationError(
                "Quadlets must be created with a concrete type",
                error_code=ErrorCode.VALIDATION_INVALID_TYPE
            )
        if not is_valid_name(name):
            raise QuadletValidationError(
                f"Invalid quadlet name: {name!r}",
                error_code=ErrorCode.VALIDATION_INVALID_NAME
            )

        if isinstance(content, (str, bytes)):
            doc = parse_quadlet(content, name=name, unit_type=unit_type)
            return self.validator.validate_or_raise(doc)
        return build_document(name, unit_type, content)

    async def _persist(self, action: str, doc: QuadletDocument) -> QuadletDocument:
        try:
            await self.store.save(doc)
        except QuadlyError as e:
            self.audit.log_quadlet_change(action, doc.unit_type.value, doc.name,
                                          success=False, error_message=e.message)
            if isinstance(e, RELOAD_ERRORS):
                # the file is on disk; only the manager reload failed
                self.broadcaster.track(doc.service_ref)
            raise
        self.audit.log_quadlet_change(action, doc.unit_type.value, doc.name)
        self.broadcaster.track(doc.service_ref)
        return doc

    async def create(self, unit_type: UnitType, name: str, content: QuadletContent) -> QuadletDocument:
        """
        Create a new quadlet.

        Args:
            unit_type: Concrete quadlet type
            name: Quadlet name; the service will be ``{name}.service``
            content: Raw unit-file text or a list of (section, entries)

        Raises:
            QuadletParseError / QuadletValidationError: Invalid content
            QuadletConflictError: An artifact already exists
            StorageError: The file could not be written
        """
        logger.info(f"Creating quadlet {name}.{unit_type.value}")
        doc = self._build(unit_type, name, content)
        if await self.store.exists(name, unit_type):
            raise QuadletConflictError(name, unit_type.value)
        return await self._persist("create", doc)

    async def update(self, unit_type: UnitType, name: str, content: QuadletContent) -> QuadletDocument:
        """Replace the content of an existing quadlet."""
        logger.info(f"Updating quadlet {name}.{unit_type.value}")
        doc = self._build(unit_type, name, content)
        if not await self.store.exists(name, unit_type):
            raise QuadletNotFoundError(name, unit_type.value)
        return await self._persist("update", doc)

    async def read(self, unit_type: UnitType, name: str) -> QuadletDocument:
        return await self.store.read(name, unit_type)

    async def list(self, unit_type: UnitType = UnitType.ANY) -> List[QuadletInfo]:
        documents = await self.store.list(unit_type)
        return [QuadletInfo.from_document(doc) for doc in documents]

    async def list_documents(self, unit_type: UnitType = UnitType.ANY) -> List[QuadletDocument]:
        """Stored documents with their full content, sorted by (type, name)."""
        return await self.store.list(unit_type)

    async def delete(self, unit_type: UnitType, name: str) -> None:
        """Delete a quadlet; the manager reload makes systemd forget it."""
        logger.info(f"Deleting quadlet {name}.{unit_type.value}")
        try:
            await self.store.delete(name, unit_type)
        except QuadlyError as e:
            self.audit.log_quadlet_change("delete", unit_type.value, name,
                                          success=False, error_message=e.message)
            raise
        self.audit.log_quadlet_change("delete", unit_type.value, name)
        # every type named ``name`` generates the same service
        for other in UnitType.concrete():
            if await self.store.exists(name, other):
                return
        self.broadcaster.untrack(service_ref_for(name))

    async def run_action(self, unit_type: UnitType, name: str, action: str) -> str:
        """
        Submit ``start``, ``stop`` or ``restart`` for the quadlet's service.

        The quadlet must exist on disk. Returns the service ref acted on.
        """
        if action not in LIFECYCLE_ACTIONS:
            raise QuadletValidationError(
                f"Unsupported action: {action}",
                context={'allowed': list(LIFECYCLE_ACTIONS)}
            )
        if not await self.store.exists(name, unit_type):
            raise QuadletNotFoundError(name, unit_type.value)

        ref = service_ref_for(name)
        try:
            await getattr(self.service_manager, action)(ref)
        except QuadlyError as e:
            self.audit.log_unit_action(action, ref, success=False, error_message=e.message)
            raise
        self.audit.log_unit_action(action, ref)
        return ref

    async def start(self, unit_type: UnitType, name: str) -> str:
        return await self.run_action(unit_type, name, "start")

    async def stop(self, unit_type: UnitType, name: str) -> str:
        return await self.run_action(unit_type, name, "stop")

    async def restart(self, unit_type: UnitType, name: str) -> str:
        return await self.run_action(unit_type, name, "restart")

    async def status(self, refs: Iterable[str]) -> Dict[str, StatusResult]:
        return await self.aggregator.query_many(refs)

    def subscribe(self, capacity: Optional[int] = None) -> Subscription:
        return self.broadcaster.subscribe(capacity)

    async def logs(self, unit_type: UnitType, name: str, lines: int = 50) -> str:
        if not await self.store.exists(name, unit_type):
            raise QuadletNotFoundError(name, unit_type.value)
        return await self.service_manager.get_unit_logs(service_ref_for(name), lines)

    async def track_existing(self) -> int:
        """Track every stored quadlet's service; returns how many were found."""
        documents = await self.store.list(UnitType.ANY)
        for doc in documents:
            self.broadcaster.track(doc.service_ref)
        logger.info(f"Tracking {len(documents)} existing quadlets")
        return len(documents)
