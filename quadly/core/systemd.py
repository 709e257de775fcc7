"""
Session-bus client for the per-user systemd instance.

This module implements SystemdUserClient, a typed proxy over the
org.freedesktop.systemd1 D-Bus API. It only ever talks to the invoking
user's session bus; if that bus is unreachable the call fails with
ServiceManagerConnectionError instead of falling back to the system bus.

All lifecycle calls are submitted in ``replace`` job mode so the most recent
request supersedes a conflicting job already queued for the unit.
Connection failures are not retried here; retry policy belongs to callers.
"""

import asyncio
import logging
from typing import Any, List, Optional

from dbus_fast import BusType, Message, MessageType
from dbus_fast.aio import MessageBus
from dbus_fast.errors import AuthError, InvalidAddressError

from quadly.shared.exceptions import (
    ServiceManagerConnectionError, UnitOperationError, UnitNotFoundError
)
from quadly.shared.interfaces import IServiceManager
from quadly.shared.models import UnitStatus

logger = logging.getLogger(__name__)

SYSTEMD_BUS_NAME = "org.freedesktop.systemd1"
SYSTEMD_OBJECT_PATH = "/org/freedesktop/systemd1"
MANAGER_INTERFACE = "org.freedesktop.systemd1.Manager"
UNIT_INTERFACE = "org.freedesktop.systemd1.Unit"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

JOB_MODE_REPLACE = "replace"

NOT_FOUND_ERRORS = frozenset([
    "org.freedesktop.systemd1.NoSuchUnit",
    "org.freedesktop.systemd1.LoadFailed",
])
UNREACHABLE_ERRORS = frozenset([
    "org.freedesktop.DBus.Error.ServiceUnknown",
    "org.freedesktop.DBus.Error.NameHasNoOwner",
    "org.freedesktop.DBus.Error.Disconnected",
])


class SystemdUserClient(IServiceManager):
    """
    Service manager client over the user session bus.

    The underlying connection is opened lazily and shared by concurrent
    callers; it is re-established on the next call after it drops.
    """

    def __init__(self, bus: Optional[MessageBus] = None, journalctl: str = "journalctl"):
        self._bus = bus
        self._connect_lock = asyncio.Lock()
        self.journalctl = journalctl

    async def _get_bus(self) -> MessageBus:
        if self._bus is not None and self._bus.connected:
            return self._bus

        async with self._connect_lock:
            if self._bus is not None and self._bus.connected:
                return self._bus
            try:
                self._bus = await MessageBus(bus_type=BusType.SESSION).connect()
            except (OSError, EOFError, AuthError, InvalidAddressError) as e:
                self._bus = None
                raise ServiceManagerConnectionError(
                    f"Session bus is unreachable: {e}",
                    cause=e
                )
            logger.info("Connected to the user session bus")
            return self._bus

    async def _call(
        self,
        member: str,
        signature: str = "",
        body: Optional[List[Any]] = None,
        path: str = SYSTEMD_OBJECT_PATH,
        interface: str = MANAGER_INTERFACE,
        unit: Optional[str] = None,
    ) -> List[Any]:
        bus = await self._get_bus()
        message = Message(
            destination=SYSTEMD_BUS_NAME,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=body or []
        )

        try:
            reply = await bus.call(message)
        except (OSError, EOFError) as e:
            self._bus = None
            raise ServiceManagerConnectionError(
                f"Lost connection to the session bus during {member}: {e}",
                cause=e
            )

        if reply is None:
            return []

        if reply.message_type == MessageType.ERROR:
            detail = reply.body[0] if reply.body else reply.error_name
            if reply.error_name in NOT_FOUND_ERRORS and unit:
                raise UnitNotFoundError(unit, operation=member)
            if reply.error_name in UNREACHABLE_ERRORS:
                raise ServiceManagerConnectionError(
                    f"User service manager is not available: {detail}",
                    context={'dbus_error': reply.error_name}
                )
            raise UnitOperationError(
                f"{member} failed: {detail}",
                unit=unit,
                operation=member,
                context={'dbus_error': reply.error_name}
            )

        return reply.body

    async def _submit_job(self, member: str, ref: str) -> str:
        body = await self._call(member, "ss", [ref, JOB_MODE_REPLACE], unit=ref)
        job_path = body[0] if body else ""
        logger.info(f"{member} {ref} queued as {job_path}")
        return job_path

    async def reload(self) -> None:
        """Ask the manager to re-read unit files (daemon-reload)."""
        await self._call("Reload")
        logger.info("Service manager reloaded")

    async def list_units(self) -> List[str]:
        body = await self._call("ListUnits")
        units = body[0] if body else []
        return sorted(entry[0] for entry in units if entry[0].endswith(".service"))

    async def start(self, ref: str) -> None:
        await self._submit_job("StartUnit", ref)

    async def stop(self, ref: str) -> None:
        await self._submit_job("StopUnit", ref)

    async def restart(self, ref: str) -> None:
        await self._submit_job("RestartUnit", ref)

    async def _get_unit_property(self, unit_path: str, name: str, ref: str) -> Any:
        body = await self._call(
            "Get", "ss", [UNIT_INTERFACE, name],
            path=unit_path,
            interface=PROPERTIES_INTERFACE,
            unit=ref
        )
        return body[0].value

    async def get_status(self, ref: str) -> UnitStatus:
        """
        Query the ActiveState of ``ref``.

        Raises:
            UnitNotFoundError: The manager has no unit file for ``ref``
            UnitOperationError: The manager rejected the query
            ServiceManagerConnectionError: The session bus is unreachable
        """
        body = await self._call("LoadUnit", "s", [ref], unit=ref)
        unit_path = body[0]

        load_state = await self._get_unit_property(unit_path, "LoadState", ref)
        if load_state == "not-found":
            raise UnitNotFoundError(ref, operation="GetStatus")

        active_state = await self._get_unit_property(unit_path, "ActiveState", ref)
        return UnitStatus.from_active_state(active_state)

    async def get_unit_logs(self, ref: str, lines: int = 50) -> str:
        """Read the last ``lines`` journal entries of ``ref``."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.journalctl, "--user", "-u", ref, "-n", str(lines), "--no-pager",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise UnitOperationError(
                f"Could not run {self.journalctl}: {e}",
                unit=ref,
                operation="logs",
                cause=e
            )

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise UnitOperationError(
                f"Error reading logs: {stderr.decode('utf-8', errors='replace').strip()}",
                unit=ref,
                operation="logs"
            )
        return stdout.decode('utf-8', errors='replace')

    async def close(self) -> None:
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None
            logger.info("Disconnected from the user session bus")
