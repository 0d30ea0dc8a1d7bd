"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - integration/: Repository tests against a real PostgreSQL
    - component/  : Service and API tests (mocked dependencies)
    - unit/       : Unit tests (pure functions, no I/O)
"""
import os
import sys
from datetime import datetime
from typing import Any, Dict, List

import pytest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


# =============================================================================
# Test Configuration
# =============================================================================

class TestConfig:
    """Centralized test configuration"""

    SERVICES = {
        "account_service": 8202,
        "location_service": 8224,
        "delivery_service": 8231,
    }

    # Infrastructure
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    NATS_URL = os.getenv("NATS_URL", "nats://localhost:4222")

    # Timeouts
    HTTP_TIMEOUT = 30
    DB_TIMEOUT = 10

    @classmethod
    def get_service_url(cls, service_name: str) -> str:
        port = cls.SERVICES.get(service_name)
        if not port:
            raise ValueError(f"Unknown service: {service_name}")
        return f"http://localhost:{port}"


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration"""
    return TestConfig()


# =============================================================================
# Test Data Generators
# =============================================================================

class TestDataGenerator:
    """Generate unique test data"""

    _counter = 0

    @classmethod
    def _next_id(cls) -> str:
        cls._counter += 1
        return f"{datetime.now().strftime('%Y%m%d%H%M%S')}_{cls._counter:04d}"

    @classmethod
    def user_id(cls) -> str:
        return f"usr_test_{cls._next_id()}"

    @classmethod
    def ref_no(cls) -> str:
        return f"REF-TEST-{cls._next_id()}"


@pytest.fixture
def generate() -> TestDataGenerator:
    """Provide test data generator"""
    return TestDataGenerator()


# =============================================================================
# Assertion Helpers
# =============================================================================

class AssertionHelpers:
    """Custom assertion helpers for tests"""

    @staticmethod
    def assert_http_success(response, expected_status: int = 200):
        """Assert HTTP response is successful"""
        assert response.status_code == expected_status, \
            f"Expected {expected_status}, got {response.status_code}: {response.text}"

    @staticmethod
    def assert_has_fields(data: Dict, fields: List[str]):
        """Assert dict has required fields"""
        missing = [f for f in fields if f not in data]
        assert not missing, f"Missing fields: {missing}"

    @staticmethod
    def assert_error_code(response, expected_status: int, error_code: str) -> Dict[str, Any]:
        """Assert an error response carries the expected status and error_code"""
        assert response.status_code == expected_status, \
            f"Expected {expected_status}, got {response.status_code}: {response.text}"
        detail = response.json()["detail"]
        assert detail["error_code"] == error_code, f"Expected {error_code}, got {detail}"
        return detail


@pytest.fixture
def assertions() -> AssertionHelpers:
    """Provide assertion helpers"""
    return AssertionHelpers()


# =============================================================================
# Skip Markers Based on Environment
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers and skip logic"""
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "component: Component tests")
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "golden: safety net tests - DO NOT MODIFY")
    config.addinivalue_line("markers", "requires_db: needs a reachable PostgreSQL")


def pytest_collection_modifyitems(config, items):
    """Modify test collection based on markers and environment"""
    skip_db = pytest.mark.skip(reason="PostgreSQL not available")

    for item in items:
        # Skip DB tests if running in --unit-only mode
        if "requires_db" in item.keywords and os.getenv("SKIP_DB_TESTS"):
            item.add_marker(skip_db)
