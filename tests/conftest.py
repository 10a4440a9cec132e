# tests/conftest.py
"""Global test configuration and fixtures."""
import pytest
from sqlalchemy import create_engine

from tests.fixtures.memory_store import MemoryCrmStore


@pytest.fixture
def memory_store() -> MemoryCrmStore:
    """Fresh in-memory store for core engine tests."""
    return MemoryCrmStore()


@pytest.fixture
def sql_engine(tmp_path, monkeypatch):
    """
    Point the service database at a throwaway SQLite file.

    The cached engine in crm_api.db.engine is replaced, so every
    get_session() call in services and the SQL store hits this file.
    """
    from crm_api.db.models import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'automation-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr("crm_api.db.engine._engine", engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine):
    """SqlCrmStore bound to the throwaway database."""
    from crm_api.db.store import SqlCrmStore

    return SqlCrmStore()
