"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("APP_ADMIN_KEY", "test-app-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from unittest.mock import AsyncMock, MagicMock

ADMIN_KEY = os.environ["ADMIN_KEY"]

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Lifespan is not run."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"x-admin-key": ADMIN_KEY}


def make_db():
    """MagicMock db whose collections expose the async motor methods the services call."""
    db = MagicMock()
    for name in ("accounts", "subscription_events", "app_sync_status", "migration_runs", "stripe_events"):
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock()
        collection.update_one = AsyncMock(return_value=MagicMock(matched_count=1, modified_count=1))
        collection.find_one_and_update = AsyncMock(return_value=None)
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
        collection.delete_many = AsyncMock(return_value=MagicMock(deleted_count=0))
        setattr(db, name, collection)
    return db


@pytest.fixture
def mock_db():
    return make_db()
