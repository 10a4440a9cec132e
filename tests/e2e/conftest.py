# tests/e2e/conftest.py
"""E2E test configuration and fixtures."""

import os
import time
import uuid
from typing import Generator

import pytest
import requests


class APIClient:
    """API client wrapper for E2E tests."""

    def __init__(self, base_url: str, tenant_id: str, api_key: str | None = None):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({"X-Tenant-Id": tenant_id, "X-User-Id": "e2e"})
        if api_key:
            self.session.headers.update({"X-API-Key": api_key})

    def get(self, path: str, **kwargs):
        """GET request."""
        return self.session.get(f"{self.base_url}{path}", **kwargs)

    def post(self, path: str, **kwargs):
        """POST request."""
        return self.session.post(f"{self.base_url}{path}", **kwargs)

    def put(self, path: str, **kwargs):
        """PUT request."""
        return self.session.put(f"{self.base_url}{path}", **kwargs)

    def delete(self, path: str, **kwargs):
        """DELETE request."""
        return self.session.delete(f"{self.base_url}{path}", **kwargs)


@pytest.fixture(scope="session")
def api_base_url() -> str:
    """Get API base URL from environment; e2e tests are skipped without one."""
    url = os.getenv("API_BASE_URL")
    if not url:
        pytest.skip("API_BASE_URL environment variable not set")
    return url


@pytest.fixture(scope="session")
def api_key() -> str | None:
    """Get API key from environment."""
    return os.getenv("API_KEY")


@pytest.fixture(scope="session")
def test_tenant() -> str:
    """Tenant the run works in; a fresh one per session keeps runs independent."""
    return os.getenv("E2E_TENANT_ID") or f"e2e-{uuid.uuid4().hex[:8]}"


@pytest.fixture(scope="session")
def api_client(api_base_url: str, test_tenant: str, api_key: str | None) -> APIClient:
    """Create API client with authentication and tenant headers."""
    return APIClient(api_base_url, test_tenant, api_key)


def poll_enrollment_status(
    api_client: APIClient,
    entity_id: str,
    timeout: int = 60,
    poll_interval: int = 2,
) -> dict:
    """
    Poll an entity's newest enrollment until it finishes.

    Args:
        api_client: API client session
        entity_id: Enrolled entity
        timeout: Maximum time to wait in seconds (default: 60)
        poll_interval: Time between polls in seconds (default: 2)

    Returns:
        Final enrollment response dict

    Raises:
        TimeoutError: If the enrollment doesn't finish within timeout
    """
    start_time = time.time()
    terminal_states = {"completed", "stopped"}

    while True:
        elapsed = time.time() - start_time
        if elapsed > timeout:
            raise TimeoutError(f"Enrollment for {entity_id} did not finish within {timeout}s")

        response = api_client.get("/api/v1/workflows/enrollments", params={"entity_id": entity_id, "limit": 1})
        response.raise_for_status()
        enrollments = response.json()["enrollments"]

        if enrollments and enrollments[0]["status"] in terminal_states:
            return enrollments[0]

        time.sleep(poll_interval)


@pytest.fixture
def poll_enrollment(api_client: APIClient) -> Generator:
    """Fixture that provides poll_enrollment_status function."""
    yield lambda entity_id, timeout=60, poll_interval=2: poll_enrollment_status(
        api_client, entity_id, timeout, poll_interval
    )
