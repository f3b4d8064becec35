"""Common test fixtures and configuration for pytest.

The reconciliation tests run against in-memory collaborators; the
integration clients are tested against mocked transports.
"""

import pytest

from cream.platform.billing.notification_guard import NotificationGuard
from cream.platform.billing.queries import ReconciliationQueries

# Import all fixtures so they are automatically available for all tests
from tests.fixtures.billing import NOW, billing, directory, event_bus  # noqa


@pytest.fixture
def clock():
    """A clock frozen at ``NOW``."""
    return lambda: NOW


@pytest.fixture
def guard(billing):
    return NotificationGuard(billing)


@pytest.fixture
def queries(directory, billing):
    return ReconciliationQueries(directory, billing, max_concurrency=3)
