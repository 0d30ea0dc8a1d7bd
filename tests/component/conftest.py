"""
Component Test Layer Configuration

Structure:
    tests/component/
    └── golden/      🔒 Characterization (never modify)

Usage:
    pytest tests/component -v
    pytest tests/component/golden/delivery_service -v
"""
import os
import sys

import pytest

# Set testing environment BEFORE any imports
os.environ["ENV"] = "testing"
os.environ["ENVIRONMENT"] = "testing"

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from core.config import DispatchConfig
from microservices.delivery_service.delivery_service import DeliveryService
from microservices.delivery_service.models import Actor, ActorRole
from tests.component.golden.delivery_service.mocks import (
    MockDeliveryRepository,
    MockEventBus,
    MockIdentityClient,
    MockLocationClient,
)


# =============================================================================
# Repository and Event Bus Mocks
# =============================================================================

@pytest.fixture
def mock_repo() -> MockDeliveryRepository:
    """Fresh in-memory delivery repository"""
    return MockDeliveryRepository()


@pytest.fixture
def mock_event_bus() -> MockEventBus:
    """Mock NATS event bus"""
    return MockEventBus()


# =============================================================================
# Service Client Mocks
# =============================================================================

@pytest.fixture
def mock_identity_client() -> MockIdentityClient:
    client = MockIdentityClient()
    client.set_role("admin_ops", "admin")
    return client


@pytest.fixture
def mock_location_client() -> MockLocationClient:
    return MockLocationClient()


# =============================================================================
# Service
# =============================================================================

@pytest.fixture
def dispatch_config() -> DispatchConfig:
    return DispatchConfig(max_active_load=5, transition_retry_limit=3)


@pytest.fixture
def delivery_service(
    mock_repo, mock_event_bus, mock_identity_client, mock_location_client, dispatch_config
) -> DeliveryService:
    """DeliveryService wired to mocks only"""
    return DeliveryService(
        repository=mock_repo,
        event_bus=mock_event_bus,
        identity_client=mock_identity_client,
        location_client=mock_location_client,
        dispatch=dispatch_config,
    )


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="admin_ops", role=ActorRole.ADMIN)
