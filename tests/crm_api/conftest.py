# tests/crm_api/conftest.py
"""Test configuration for the HTTP layer."""
import pytest
from fastapi.testclient import TestClient

TENANT_HEADERS = {"X-Tenant-Id": "t1", "X-User-Id": "u1"}


@pytest.fixture
def client(sql_engine, monkeypatch):
    """
    TestClient on the throwaway database.

    Used without a ``with`` block so the lifespan (sweeper, seeding) never runs.
    """
    from crm_api.main import app

    monkeypatch.delenv("API_KEY", raising=False)
    return TestClient(app, headers=TENANT_HEADERS)
