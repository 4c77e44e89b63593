"""
FleetPulse - pytest Configuration

Shared fixtures and configuration for all tests.
"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict

from redis.exceptions import ConnectionError as RedisConnectionError


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires external services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested."""
    if not config.getoption("--run-integration", default=False):
        skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="run integration tests against a live backend and Redis"
    )


# =============================================================================
# MOCK REDIS
# =============================================================================

class MockRedis:
    """Mock Redis client implementing the hash commands used for geofence state."""

    def __init__(self):
        self.hash_data: Dict[str, Dict[str, str]] = {}
        self.connected = True

    def simulate_connection_failure(self) -> None:
        self.connected = False

    def restore_connection(self) -> None:
        self.connected = True

    def _check(self) -> None:
        if not self.connected:
            raise RedisConnectionError("Mock Redis is down")

    async def ping(self):
        self._check()
        return True

    async def hget(self, key, field):
        self._check()
        return self.hash_data.get(key, {}).get(field)

    async def hset(self, key, field=None, value=None, mapping=None):
        self._check()
        bucket = self.hash_data.setdefault(key, {})
        if mapping:
            bucket.update({k: str(v) for k, v in mapping.items()})
        if field is not None:
            bucket[field] = str(value)
        return 1

    async def hdel(self, key, *fields):
        self._check()
        bucket = self.hash_data.get(key, {})
        removed = 0
        for field in fields:
            if bucket.pop(field, None) is not None:
                removed += 1
        return removed

    async def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.hash_data.pop(key, None) is not None)

    async def aclose(self):
        self.connected = False


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing."""
    return MockRedis()


@pytest.fixture
def t0():
    """A fixed, timezone-aware reference instant."""
    return datetime(2024, 5, 6, 8, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_sample(t0):
    """Factory for position samples offset in milliseconds from t0."""
    from fleetpulse.models import PositionSample

    def _make(offset_ms: int, speed: float, lat: float = 0.0, lng: float = 0.0):
        return PositionSample(
            lat=lat,
            lng=lng,
            speed_kmh=speed,
            captured_at=t0 + timedelta(milliseconds=offset_ms),
        )

    return _make


@pytest.fixture
def square_geofence():
    """A 0.01 degree square danger zone around the origin."""
    from fleetpulse.models import GeoPoint, Geofence

    return Geofence(
        id="gf-quarry",
        name="Quarry Blast Zone",
        polygon=[
            GeoPoint(lat=-0.005, lng=-0.005),
            GeoPoint(lat=-0.005, lng=0.005),
            GeoPoint(lat=0.005, lng=0.005),
            GeoPoint(lat=0.005, lng=-0.005),
        ],
    )


@pytest.fixture
def memory_store():
    """A fresh in-memory telemetry store."""
    from fleetpulse.backend.store import InMemoryTelemetryStore
    return InMemoryTelemetryStore()


@pytest.fixture
def driver():
    """A conductor profile."""
    from fleetpulse.models import UserProfile, UserRole
    return UserProfile(
        id="driver-1",
        full_name="Lucia Mamani",
        email="lucia@example.com",
        company_id="company-1",
        role=UserRole.CONDUCTOR,
    )


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================

@pytest.fixture
def test_config():
    """Create a test configuration with fast timings."""
    from fleetpulse.config import (
        BackendConfig,
        Environment,
        FleetPulseConfig,
        GpsConfig,
    )

    return FleetPulseConfig(
        environment=Environment.DEVELOPMENT,
        backend=BackendConfig(
            url="https://fleet.example.supabase.co",
            anon_key="anon-test-key",
            retry_attempts=2,
            retry_delay=0.0,
        ),
        gps=GpsConfig(
            poll_interval_seconds=0.0,
            fix_timeout_seconds=1.0,
            max_attempts=3,
            retry_delay_seconds=0.0,
        ),
    )


@pytest.fixture(autouse=True)
def reset_config_fixture():
    """Reset global configuration before each test."""
    from fleetpulse.config import reset_config
    reset_config()
    yield
    reset_config()
