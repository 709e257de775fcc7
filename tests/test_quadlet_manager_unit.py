#!/usr/bin/env python3
"""
Unit tests for QuadletManager.

Tests CRUD through the store, lifecycle actions in replace mode, tracking of
saved quadlets by the broadcaster, and audit logging of mutations.
"""

from unittest.mock import MagicMock

import pytest

from quadly.core.quadlet_manager import QuadletManager
from quadly.shared.exceptions import (
    QuadletConflictError, QuadletNotFoundError, QuadletParseError, QuadletValidationError,
    ServiceManagerConnectionError, UnitOperationError
)
from quadly.shared.models import UnitStatus, UnitType
from conftest import WEBAPP_CONTAINER


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def manager(store, fake_manager, aggregator, broadcaster, audit):
    return QuadletManager(store, fake_manager, aggregator, broadcaster, audit=audit)


class TestCreate:
    """Test quadlet creation."""

    @pytest.mark.asyncio
    async def test_create_from_text(self, manager, fake_manager, quadlet_dir, audit):
        """Creating from text writes the file, reloads once and audits the change."""
        doc = await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        assert doc.service_ref == "webapp.service"
        assert (quadlet_dir / "webapp.container").is_file()
        assert fake_manager.reload_count == 1
        audit.log_quadlet_change.assert_called_once_with("create", "container", "webapp")

    @pytest.mark.asyncio
    async def test_create_from_sections(self, manager):
        """Creating from structured sections keeps the given entries."""
        doc = await manager.create(UnitType.CONTAINER, "db", [
            ("Container", [("Image", "docker.io/library/postgres"), ("Volume", "pg:/var/lib/postgresql")]),
            ("Install", [("WantedBy", "default.target")]),
        ])

        assert doc.section("Container").get("Image") == "docker.io/library/postgres"

    @pytest.mark.asyncio
    async def test_create_tracks_service(self, manager, broadcaster):
        """A created quadlet's service is polled from the next cycle."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        changes = await broadcaster.poll_once()

        assert broadcaster.tracked_units == frozenset({"webapp.service"})
        assert changes[0].new_status is UnitStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_create_conflict(self, manager, fake_manager):
        """Creating over an existing artifact is a conflict and does not reload."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        with pytest.raises(QuadletConflictError):
            await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        assert fake_manager.reload_count == 1

    @pytest.mark.asyncio
    async def test_create_malformed(self, manager, quadlet_dir):
        """Malformed text is rejected before anything is written."""
        with pytest.raises(QuadletParseError):
            await manager.create(UnitType.CONTAINER, "webapp", "Image=nginx\n[Container]\n")

        assert not quadlet_dir.exists()

    @pytest.mark.asyncio
    async def test_create_missing_image(self, manager):
        """A container without Image= fails validation."""
        with pytest.raises(QuadletValidationError) as exc_info:
            await manager.create(UnitType.CONTAINER, "webapp", "[Container]\nPublishPort=80:80\n")

        assert exc_info.value.violations[0].key == "Image"

    @pytest.mark.asyncio
    async def test_create_requires_concrete_type(self, manager):
        """Quadlets cannot be created with type any."""
        with pytest.raises(QuadletValidationError):
            await manager.create(UnitType.ANY, "webapp", WEBAPP_CONTAINER)

    @pytest.mark.asyncio
    async def test_failed_save_is_audited(self, manager, fake_manager, audit):
        """A failed save is audited as a failure."""
        fake_manager.connected = False

        with pytest.raises(ServiceManagerConnectionError):
            await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        audit.log_quadlet_change.assert_called_once()
        assert audit.log_quadlet_change.call_args.kwargs["success"] is False

    @pytest.mark.asyncio
    async def test_written_quadlet_tracked_despite_reload_failure(self, manager, fake_manager,
                                                                  broadcaster, quadlet_dir):
        """A quadlet that reached disk is monitored even if the reload failed."""
        fake_manager.connected = False

        with pytest.raises(ServiceManagerConnectionError):
            await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        fake_manager.connected = True
        await broadcaster.poll_once()

        assert (quadlet_dir / "webapp.container").is_file()
        assert "webapp.service" in broadcaster.tracked_units


class TestReadUpdateDelete:
    """Test read, update, list and delete."""

    @pytest.mark.asyncio
    async def test_update_existing(self, manager):
        """Updating replaces the stored content."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        await manager.update(UnitType.CONTAINER, "webapp",
                             WEBAPP_CONTAINER.replace("8080:80", "9090:80"))

        doc = await manager.read(UnitType.CONTAINER, "webapp")
        assert doc.section("Container").get("PublishPort") == "9090:80"

    @pytest.mark.asyncio
    async def test_update_missing(self, manager):
        """Updating an absent quadlet raises QuadletNotFoundError."""
        with pytest.raises(QuadletNotFoundError):
            await manager.update(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

    @pytest.mark.asyncio
    async def test_list_returns_summaries(self, manager):
        """Listing returns summaries sorted by type with descriptions."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        await manager.create(UnitType.NETWORK, "backend", "[Network]\nSubnet=10.89.0.0/24\n")

        infos = await manager.list()
        containers = await manager.list(UnitType.CONTAINER)

        assert [(i.unit_type, i.name) for i in infos] == [
            (UnitType.CONTAINER, "webapp"), (UnitType.NETWORK, "backend")
        ]
        assert containers[0].description == "Web application"

    @pytest.mark.asyncio
    async def test_list_documents_include_content(self, manager):
        """Full documents are listed with the same type filter and ordering."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        await manager.create(UnitType.NETWORK, "backend", "[Network]\nSubnet=10.89.0.0/24\n")

        networks = await manager.list_documents(UnitType.NETWORK)

        assert [d.name for d in networks] == ["backend"]
        assert networks[0].section("Network").get("Subnet") == "10.89.0.0/24"

    @pytest.mark.asyncio
    async def test_delete_untracks(self, manager, broadcaster, fake_manager, audit):
        """Deleting the only artifact for a name stops monitoring its service."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        await broadcaster.poll_once()

        await manager.delete(UnitType.CONTAINER, "webapp")
        await broadcaster.poll_once()

        assert broadcaster.tracked_units == frozenset()
        assert "webapp.service" not in fake_manager.statuses
        audit.log_quadlet_change.assert_called_with("delete", "container", "webapp")

    @pytest.mark.asyncio
    async def test_delete_keeps_service_shared_with_other_type(self, manager, broadcaster):
        """Deleting one type leaves the service tracked while another type shares its name."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        await manager.create(UnitType.NETWORK, "webapp", "[Network]\n")
        await broadcaster.poll_once()

        await manager.delete(UnitType.NETWORK, "webapp")
        await broadcaster.poll_once()

        assert (await manager.read(UnitType.CONTAINER, "webapp")).name == "webapp"
        assert broadcaster.tracked_units == frozenset({"webapp.service"})

        await manager.delete(UnitType.CONTAINER, "webapp")
        await broadcaster.poll_once()

        assert broadcaster.tracked_units == frozenset()

    @pytest.mark.asyncio
    async def test_delete_missing(self, manager, audit):
        """Deleting an absent quadlet raises and is audited as a failure."""
        with pytest.raises(QuadletNotFoundError):
            await manager.delete(UnitType.CONTAINER, "webapp")

        assert audit.log_quadlet_change.call_args.kwargs["success"] is False


class TestLifecycle:
    """Test lifecycle actions on generated services."""

    @pytest.mark.asyncio
    async def test_actions_use_replace_mode(self, manager, fake_manager, audit):
        """start, restart and stop are all submitted in replace mode and audited."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)

        await manager.start(UnitType.CONTAINER, "webapp")
        await manager.restart(UnitType.CONTAINER, "webapp")
        await manager.stop(UnitType.CONTAINER, "webapp")

        lifecycle = [c for c in fake_manager.calls if c[0].endswith("Unit")]
        assert lifecycle == [
            ("StartUnit", "webapp.service", "replace"),
            ("RestartUnit", "webapp.service", "replace"),
            ("StopUnit", "webapp.service", "replace"),
        ]
        assert fake_manager.statuses["webapp.service"] is UnitStatus.INACTIVE
        assert audit.log_unit_action.call_count == 3

    @pytest.mark.asyncio
    async def test_action_requires_stored_quadlet(self, manager, fake_manager):
        """Actions on a quadlet that is not stored never reach the manager."""
        with pytest.raises(QuadletNotFoundError):
            await manager.start(UnitType.CONTAINER, "webapp")

        assert not any(c[0] == "StartUnit" for c in fake_manager.calls)

    @pytest.mark.asyncio
    async def test_unknown_action(self, manager):
        """Actions other than start, stop and restart are rejected."""
        with pytest.raises(QuadletValidationError):
            await manager.run_action(UnitType.CONTAINER, "webapp", "kill")

    @pytest.mark.asyncio
    async def test_rejected_action_is_audited(self, manager, fake_manager, audit):
        """A manager rejection is raised and audited as a failure."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        fake_manager.fail_unit("webapp.service", UnitOperationError("unit is masked", unit="webapp.service"))

        with pytest.raises(UnitOperationError):
            await manager.start(UnitType.CONTAINER, "webapp")

        assert audit.log_unit_action.call_args.kwargs["success"] is False

    @pytest.mark.asyncio
    async def test_status_batch(self, manager):
        """Batch status reports statuses and per-unit errors together."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        await manager.start(UnitType.CONTAINER, "webapp")

        results = await manager.status(["webapp.service", "ghost.service"])

        assert results["webapp.service"] is UnitStatus.ACTIVE
        assert results["ghost.service"].unit == "ghost.service"

    @pytest.mark.asyncio
    async def test_logs(self, manager, fake_manager):
        """Logs return the last requested journal lines."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        fake_manager.logs["webapp.service"] = ["one", "two", "three"]

        assert await manager.logs(UnitType.CONTAINER, "webapp", lines=2) == "two\nthree"

    @pytest.mark.asyncio
    async def test_track_existing(self, manager, broadcaster, store):
        """Quadlets already on disk are tracked at startup."""
        await manager.create(UnitType.CONTAINER, "webapp", WEBAPP_CONTAINER)
        await manager.create(UnitType.VOLUME, "data", "[Volume]\n")
        fresh = QuadletManager(store, manager.service_manager, manager.aggregator, broadcaster)

        assert await fresh.track_existing() == 2
        await broadcaster.poll_once()
        assert broadcaster.tracked_units == frozenset({"webapp.service", "data.service"})
