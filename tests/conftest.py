"""
Shared fixtures for the Quadly test suite.
"""

from pathlib import Path

import pytest

from quadly.config import reset_config
from quadly.core.aggregator import StatusAggregator
from quadly.core.broadcaster import StatusBroadcaster
from quadly.core.memory import InMemoryServiceManager
from quadly.core.quadlet_manager import QuadletManager
from quadly.core.store import QuadletStore


WEBAPP_CONTAINER = """\
[Unit]
Description=Web application

[Container]
Image=docker.io/library/nginx
PublishPort=8080:80
Volume=/srv/www:/usr/share/nginx/html:ro
Volume=/srv/conf:/etc/nginx/conf.d:ro

[Install]
WantedBy=default.target
"""


def services_in(directory: Path):
    """Services the generator would produce for the quadlets in ``directory``."""
    if not directory.is_dir():
        return []
    return [
        f"{path.name.rsplit('.', 1)[0]}.service"
        for path in directory.iterdir()
        if path.is_file() and not path.name.startswith('.')
    ]


@pytest.fixture
def quadlet_dir(tmp_path):
    return tmp_path / "systemd"


@pytest.fixture
def fake_manager(quadlet_dir):
    """In-memory service manager whose units follow the quadlet directory on reload."""
    manager = InMemoryServiceManager()
    manager.unit_source = lambda: services_in(quadlet_dir)
    return manager


@pytest.fixture
def store(quadlet_dir, fake_manager):
    return QuadletStore(quadlet_dir, fake_manager)


@pytest.fixture
def aggregator(fake_manager):
    return StatusAggregator(fake_manager, query_timeout=1.0)


@pytest.fixture
def broadcaster(aggregator):
    return StatusBroadcaster(aggregator, poll_interval=0.01, buffer_size=8)


@pytest.fixture
def quadlet_manager(store, fake_manager, aggregator, broadcaster):
    return QuadletManager(store, fake_manager, aggregator, broadcaster)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Each test loads configuration from a clean environment."""
    for key in ("QUADLY_QUADLET_DIR", "QUADLY_POLL_INTERVAL", "QUADLY_SUBSCRIBER_BUFFER",
                "QUADLY_QUERY_TIMEOUT", "QUADLY_QUERY_RETRIES", "HTTP_HOST", "HTTP_PORT",
                "LOG_LEVEL", "LOG_FORMAT", "LOG_FILE", "AUDIT_LOG_FILE", "AUDIT_LOG_ENABLED"):
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()
