"""Shared test fixtures for the billing test suite."""

import pytest
from pathlib import Path
from unittest.mock import Mock

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from utils.tenant_context import clear_tenant, tenant_context

from tests.factories import TEST_STUDIO_ID, TEST_USER_ID
from tests.fakes import FakePostgres


# =============================================================================
# TENANT CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_tenant():
    """Ensure clean tenant context before and after each test."""
    clear_tenant()
    yield
    clear_tenant()


@pytest.fixture
def as_studio_user():
    """Act as the test user inside the test studio."""
    with tenant_context(TEST_STUDIO_ID, TEST_USER_ID):
        yield TEST_STUDIO_ID


@pytest.fixture
def as_system():
    """Act as the system (no user) inside the test studio, like a sweep or webhook."""
    with tenant_context(TEST_STUDIO_ID):
        yield TEST_STUDIO_ID


# =============================================================================
# INFRASTRUCTURE FAKES
# =============================================================================


@pytest.fixture
def db():
    """Route-based PostgresClient fake."""
    return FakePostgres()


@pytest.fixture
def audit(db):
    from core.audit import AuditLogger
    return AuditLogger(db)


@pytest.fixture
def event_bus():
    from core.event_bus import EventBus
    return EventBus()


@pytest.fixture
def published(event_bus):
    """Every event published on the bus, in order."""
    events = []
    for name in ("InvoiceSent", "InvoicePaid", "PaymentCompleted", "PaymentRefunded"):
        event_bus.subscribe(name, events.append)
    return events


@pytest.fixture
def email_client():
    """EmailGatewayClient double that accepts everything."""
    from clients.email_client import EmailGatewayClient
    client = Mock(spec=EmailGatewayClient)
    client.send_email.return_value = "msg-1"
    return client
