"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock

from cap_broker.clients.upstream_client import UpstreamTenant
from cap_broker.config import Config, DatabaseConfig
from cap_broker.monitoring.metrics import MetricsCollector
from cap_broker.services.jobs import JobScheduler
from cap_broker.services.provisioning import BrokerService
from cap_broker.storage.memory_store import MemoryStateStore


@pytest.fixture
def test_config():
    """Create test configuration."""
    config = Config()
    config.database = DatabaseConfig(type="memory")
    config.broker.dashboard_base = "https://dashboard.example.com/cap"
    config.upstream.api_base = "https://upstream.example.com"
    config.upstream.retries = 0
    config.upstream.retry_base_delay = 0.0
    config.api.request_timeout = 10.0
    config.api.debug = True
    config.logging.level = "DEBUG"
    return config


@pytest.fixture
def metrics():
    """Isolated metrics collector."""
    return MetricsCollector()


@pytest.fixture
async def memory_store():
    """Initialized in-memory state store."""
    store = MemoryStateStore()
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def mock_upstream():
    """Upstream client double returning one tenant and one contact user."""
    upstream = AsyncMock()
    upstream.create_account_and_service.return_value = UpstreamTenant(
        account_id="acc-1", service_id="svc-1"
    )
    upstream.create_contact_user.return_value = {
        'id': "user-1", 'email': "ops@example.com", 'account_id': "acc-1"
    }
    upstream.delete_service_and_account.return_value = None
    upstream.delete_contact_user.return_value = None
    upstream.update_plan.return_value = {}
    upstream.ping.return_value = True
    return upstream


@pytest.fixture
def scheduler():
    return JobScheduler()


@pytest.fixture
def broker_service(memory_store, mock_upstream, scheduler, test_config, metrics):
    """Protocol engine wired to the memory store and a mocked upstream."""
    return BrokerService(memory_store, mock_upstream, scheduler, test_config.broker, metrics=metrics)


@pytest.fixture
def async_broker_service(memory_store, mock_upstream, scheduler, test_config, metrics):
    """Protocol engine with asynchronous provisioning enabled."""
    test_config.broker.enable_async = True
    return BrokerService(memory_store, mock_upstream, scheduler, test_config.broker, metrics=metrics)
