"""Pytest fixtures for StreamPanel tests."""
import os

# Module-level settings are read at import time
os.environ.setdefault("STREAMPANEL_DB_URL", "sqlite:///:memory:")
os.environ["STREAMPANEL_AGENT_SECRET"] = "test-agent-secret"
os.environ["STREAMPANEL_SERVER_DOMAIN"] = ""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from panel.api.deps import get_db
from panel.database import init_db
from panel.models import StreamingUser
from panel.service import app, create_context, start_context, stop_context
from panel.services.live_client import LiveBackendClient, LiveResponse

AGENT_SECRET = "test-agent-secret"
NOW = datetime(2026, 1, 15, 12, 0, 0)


# --- Database Fixtures ---

@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every session (and worker thread) gets its own connection."""
    engine = create_engine(
        f"sqlite:///{(tmp_path / 'panel.db').as_posix()}",
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    init_db(bind=engine, session_factory=factory)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    """Factory fixture inserting a subscriber row."""
    def _make(username="alice", **fields):
        fields.setdefault("password", "secret")
        fields.setdefault("expiry_date", NOW + timedelta(days=30))
        user = StreamingUser(username=username, **fields)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


# --- Mock Fixtures ---

@pytest.fixture
def live_client() -> MagicMock:
    """Live backend client that is never reachable over the network."""
    client = MagicMock(spec=LiveBackendClient)
    client.get_json.return_value = None
    client.request.return_value = LiveResponse(status_code=200, payload={"success": True}, text='{"success": true}')
    return client


# --- API Fixtures ---

@pytest.fixture
def panel_context(session_factory, live_client):
    """Panel services with inline change feed delivery and no background sweeper."""
    context = create_context(session_factory, threaded=False, client=live_client)
    context.sweeper = None
    start_context(context, session_factory)
    yield context
    stop_context(context, session_factory)


@pytest.fixture
def client(session_factory, panel_context):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
