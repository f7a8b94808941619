"""Pytest configuration and shared fixtures.

Provides common fixtures for:
- Temporary database paths
- Mock environment variables
- Settings, database and credential store instances
- Sample orders
"""

import pytest
from pathlib import Path
import tempfile


# =============================================================================
# TEMPORARY PATHS
# =============================================================================

@pytest.fixture
def temp_db_path():
    """Create a temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_sync.db"


@pytest.fixture
def temp_log_path():
    """Create a temporary log file path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.log"


# =============================================================================
# ENVIRONMENT VARIABLES
# =============================================================================

@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set up mock environment variables for testing.

    This provides the environment variables needed for the Settings class
    to initialize successfully, and clears the optional ones a developer
    machine might have set.
    """
    monkeypatch.setenv("ZOHO_ORGANIZATION_ID", "60000000001")
    monkeypatch.setenv("ZOHO_DATACENTER", "us")
    monkeypatch.setenv("ENCRYPTION_KEY", "test-encryption-key")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("BULK_SYNC_DELAY", "0")
    for name in (
        "ZOHO_CLIENT_ID",
        "ZOHO_CLIENT_SECRET",
        "ZOHO_REFRESH_TOKEN",
        "SITE_SECRET",
        "RETRY_MODE",
        "RECONCILIATION_AUTO_LINK",
    ):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# CORE OBJECTS
# =============================================================================

@pytest.fixture
def settings(mock_env_vars):
    """Settings built from the mock environment."""
    from src.config import Settings
    return Settings()


@pytest.fixture
def database(temp_db_path):
    """Create a real database instance for testing."""
    from src.database import Database
    return Database(temp_db_path)


@pytest.fixture
def credential_store(database, settings):
    """Credential store with client credentials and a valid access token."""
    from src.credential_store import CredentialStore

    store = CredentialStore(database, settings)
    store.save_credentials("test_client_id", "test_client_secret", "1000.refresh.token")
    store.save_access_token("test_access_token", 3600)
    return store


# =============================================================================
# SAMPLE MODELS
# =============================================================================

@pytest.fixture
def sample_order():
    """A paid, completed order with two products and shipping."""
    from src.models import Order
    from tests.fixtures.order_fixtures import make_order

    return Order.model_validate(make_order())


@pytest.fixture
def sample_refund():
    """A partial refund of one line."""
    from src.models import OrderRefund
    from tests.fixtures.order_fixtures import make_refund

    return OrderRefund.model_validate(make_refund())
