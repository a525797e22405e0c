"""
Shared fixtures: in-memory store, API client, signing and token helpers.
"""

import json
import os
import time
from datetime import datetime, timezone
from typing import Optional

# Environment must be in place before the settings object is created
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-enough-length-1234")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENABLE_RATE_LIMITING", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from bidpeek.api.main import app
from bidpeek.core.security import SecurityUtils, build_signature_header
from bidpeek.core.settings import settings
from bidpeek.db.session import build_engine, create_db_and_tables, get_session

TEST_DATABASE_URL = "sqlite://"
WEBHOOK_SECRET = settings.stripe_webhook_secret


@pytest.fixture(scope="function")
def setup_test_database():
    """Fresh in-memory store for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(bind=engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(setup_test_database):
    """Get database session for testing."""
    with Session(setup_test_database) as session:
        yield session


@pytest.fixture
def client(setup_test_database):
    """API client bound to the test store."""

    def override_get_session():
        with Session(setup_test_database) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed store for tests that need real concurrent connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'bidpeek-test.db'}")
    create_db_and_tables(bind=engine)

    yield engine

    engine.dispose()


class TestHelpers:
    """Helpers for building signed provider events and client tokens."""

    @staticmethod
    def unix(value: datetime) -> int:
        return int(value.replace(tzinfo=timezone.utc).timestamp())

    @staticmethod
    def event(event_id: str, event_type: str, obj: dict, created: Optional[datetime] = None) -> bytes:
        payload = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": TestHelpers.unix(created) if created else int(time.time()),
            "data": {"object": obj},
        }
        return json.dumps(payload).encode("utf-8")

    @staticmethod
    def sign(payload: bytes, secret: str = None, timestamp: int = None) -> str:
        return build_signature_header(payload, secret or WEBHOOK_SECRET, timestamp)

    @staticmethod
    def token(user_id: str) -> str:
        return SecurityUtils.create_access_token({"sub": user_id})

    @staticmethod
    def bearer(user_id: str) -> dict:
        return {"Authorization": f"Bearer {TestHelpers.token(user_id)}"}


@pytest.fixture
def helpers():
    return TestHelpers


# Custom markers for different test categories
def pytest_collection_modifyitems(config, items):
    """Add custom markers to tests."""
    for item in items:
        if "webhook" in item.name or "webhook" in str(item.fspath):
            item.add_marker(pytest.mark.webhook)
        if "concurren" in str(item.fspath):
            item.add_marker(pytest.mark.concurrency)
