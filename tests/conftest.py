"""
Pytest configuration and fixtures for the test suite.
"""
import os
import sys
from unittest.mock import MagicMock

import pytest
import respx

# Add src directory (and the repo root, for tests.fixtures) to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from dashboard_client.client import ApiClient
from dashboard_client.config import ClientConfig
from dashboard_client.credential_store import MemoryCredentialStore
from tests.fixtures.api_mocks import BASE_URL, FakeClock


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )


@pytest.fixture
def config(tmp_path):
    """Client config pointing at the mocked API, with instant retries."""
    return ClientConfig(
        base_url=BASE_URL,
        data_dir=tmp_path,
        retry_attempts=2,
        retry_delay=0.0,
    )


@pytest.fixture
def credentials():
    """A logged-in credential pair."""
    return MemoryCredentialStore(access="access-1", refresh="refresh-1")


@pytest.fixture
def session_expired():
    return MagicMock()


@pytest.fixture
def client(config, credentials, session_expired):
    return ApiClient(config, credentials, on_session_expired=session_expired)


@pytest.fixture
def api_mock():
    """respx router scoped to the test API's base URL."""
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def clock():
    return FakeClock()
