"""
Pytest configuration and fixtures for Client Reporting tests.

Provides common fixtures for:
- A controllable clock shared by every time-dependent component
- In-memory key/value and artifact stores
- Test client with dependency overrides
- A seeded agency, client and API key
"""

import asyncio
import os

# Settings are read at import time; pin the test environment first
os.environ["ENVIRONMENT"] = "test"
os.environ["PDF_SIGNING_SECRET"] = "test-pdf-signing-secret-0123456789abcdef"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["EMAIL_PROVIDER_API_KEY"] = ""
os.environ["BASE_URL"] = "https://reports.test"

from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

from client_reporting.api.deps import get_artifact_store, get_clock, get_kv_store
from client_reporting.main import app
from client_reporting.schemas.tenants import Agency, Client, SubscriptionStatus
from client_reporting.services.artifact_store import MemoryArtifactStore
from client_reporting.services.kv_store import MemoryKeyValueStore
from client_reporting.services.tenant_directory import TenantDirectory

TEST_SECRET = os.environ["PDF_SIGNING_SECRET"]
START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock; tests move it forward explicitly."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store(clock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def artifacts() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def directory(kv_store, clock) -> TenantDirectory:
    return TenantDirectory(kv_store, clock=clock)


@pytest.fixture
def tenant(directory) -> dict[str, Any]:
    """An active agency with one client, plus a second agency for isolation tests."""

    async def _seed() -> dict[str, Any]:
        agency, api_key = await directory.create_agency(
            "Acme Digital", "billing@acmedigital.com", SubscriptionStatus.ACTIVE
        )
        client = await directory.create_client(agency.id, "Bakery Co", "owner@bakeryco.com")
        other_agency, other_api_key = await directory.create_agency(
            "Rival Media", "billing@rivalmedia.com", SubscriptionStatus.ACTIVE
        )
        other_client = await directory.create_client(other_agency.id, "Florist", "hi@florist.com")
        return {
            "agency": agency,
            "api_key": api_key,
            "client": client,
            "other_agency": other_agency,
            "other_api_key": other_api_key,
            "other_client": other_client,
        }

    # Memory store holds no loop-bound state, so a throwaway loop is fine
    return asyncio.run(_seed())


@pytest.fixture
def agency(tenant) -> Agency:
    return tenant["agency"]


@pytest.fixture
def client_record(tenant) -> Client:
    return tenant["client"]


@pytest.fixture
def auth_headers(tenant) -> dict[str, str]:
    return {"x-api-key": tenant["api_key"]}


# =============================================================================
# Test Client
# =============================================================================


@pytest.fixture
def client(clock, kv_store, artifacts) -> Generator[TestClient, None, None]:
    """Test client wired to the in-memory stores and the fake clock."""
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_kv_store] = lambda: kv_store
    app.dependency_overrides[get_artifact_store] = lambda: artifacts

    yield TestClient(app)

    app.dependency_overrides.clear()
