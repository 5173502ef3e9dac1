"""Shared test fixtures: mock sessions, SQLite sessions and API clients."""
from datetime import datetime, timedelta

import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from dropwatch.database import build_engine, get_db, get_session_factory
from dropwatch.main import app
from dropwatch.models import Base  # noqa: F401 -- registers all models
from dropwatch.modules.alert_fanout import AlertPublisher
from dropwatch.modules.ingest import PipelineConfig


@pytest.fixture
def mock_db():
    """MagicMock database session; returns None for all queries by default."""
    session = MagicMock()
    # Default: query().filter().first() returns None (not found)
    session.query.return_value.filter.return_value.first.return_value = None
    session.query.return_value.filter.return_value.all.return_value = []
    session.query.return_value.filter.return_value.order_by.return_value.all.return_value = []
    return session


@pytest.fixture
def db():
    """In-memory SQLite session with all tables, fresh for each test."""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False)
    session = Session()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite session factory.

    Each worker thread gets its own connection, so this is the fixture for
    anything that ingests in parallel.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'dropwatch_test.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def publisher():
    """Isolated alert fan-out that records every published message."""
    pub = AlertPublisher()
    pub.received = []
    pub.subscribe(pub.received.append)
    return pub


@pytest.fixture
def pipeline_config():
    """Default thresholds, single lane."""
    return PipelineConfig.from_settings(max_workers=1)


@pytest.fixture
def api_client(mock_db):
    """TestClient with DB dependency overridden to use a MagicMock session."""
    def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def sqlite_api_client(session_factory):
    """TestClient backed by a real file SQLite database."""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def _shuttle_fixes(vehicle_id="bus-1", start=datetime(2024, 3, 4, 10, 0, 0), count=20, interval_sec=180):
    points = [(52.50, 13.40), (52.55, 13.40)]
    return [
        {
            "vehicleId": vehicle_id,
            "ts": (start + timedelta(seconds=i * interval_sec)).isoformat() + "Z",
            "lat": points[i % 2][0],
            "lon": points[i % 2][1],
        }
        for i in range(count)
    ]


@pytest.fixture
def shuttle_fixes():
    """Builder for raw fixes alternating between two points ~5.6 km apart (111 km/h at 180 s)."""
    return _shuttle_fixes
