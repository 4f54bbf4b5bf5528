"""Shared test fixtures: mocked and in-memory SQLite sessions, API client, data factories."""
from datetime import timedelta

import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.database import get_db
from app.models import Base  # noqa: F401 -- registers all models
from app.models.base import (
    OccurrenceSourceEnum,
    OccurrenceStatusEnum,
    RegionTypeEnum,
    SeverityEnum,
)
from app.models.crime_type import CrimeType
from app.models.occurrence import Occurrence
from app.models.region import Region
from app.modules.job_queue import JobQueue, get_job_queue
from app.modules.navigation import NavigationRegistry, get_registry
from app.modules.provider_gateway import get_gateway
from app.utils.cache import MemoryCache, get_cache
from app.utils.clock import utcnow


def square_wkt(south: float, west: float, north: float, east: float) -> str:
    return (
        f"POLYGON(({west} {south}, {east} {south}, {east} {north}, "
        f"{west} {north}, {west} {south}))"
    )


@pytest.fixture
def mock_db():
    """MagicMock database session — returns None for all queries by default."""
    session = MagicMock()
    # Default: query().filter().first() returns None (not found)
    session.query.return_value.filter.return_value.first.return_value = None
    session.query.return_value.filter.return_value.filter.return_value.all.return_value = []
    session.query.return_value.filter.return_value.all.return_value = []
    session.query.return_value.filter.return_value.order_by.return_value.all.return_value = []
    session.get.return_value = None
    return session


@pytest.fixture
def db():
    """In-memory SQLite session shared across threads (TestClient runs sync routes in a pool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def fake_gateway():
    gateway = MagicMock()
    gateway.alternative_routes.return_value = []
    gateway.statistics.return_value = {"primary": "nominatim", "fallback": "google", "providers": {}}
    return gateway


@pytest.fixture
def job_queue():
    """Inline queue with no handlers: enqueue() is observable but runs nothing."""
    return JobQueue(retry_base_delay=0)


@pytest.fixture
def registry():
    return NavigationRegistry()


def _client(session, memory_cache, fake_gateway, job_queue, registry):
    def override_get_db():
        yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: memory_cache
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    app.dependency_overrides[get_registry] = lambda: registry
    return TestClient(app)


@pytest.fixture
def api_client(mock_db, memory_cache, fake_gateway, job_queue, registry):
    """TestClient with DB dependency overridden to use a MagicMock session."""
    with _client(mock_db, memory_cache, fake_gateway, job_queue, registry) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def db_client(db, memory_cache, fake_gateway, job_queue, registry):
    """TestClient backed by the in-memory SQLite session."""
    with _client(db, memory_cache, fake_gateway, job_queue, registry) as client:
        yield client
    app.dependency_overrides.clear()


# -- Data factories --

@pytest.fixture
def make_crime_type(db):
    def _make(name="Robbery", parent_id=None):
        crime_type = CrimeType(name=name, parent_id=parent_id)
        db.add(crime_type)
        db.commit()
        return crime_type
    return _make


@pytest.fixture
def make_region(db):
    def _make(name="Centro", south=-23.56, west=-46.64, north=-23.54, east=-46.62,
              region_type=RegionTypeEnum.NEIGHBORHOOD, code=None, parent_id=None):
        boundary = square_wkt(south, west, north, east)
        region = Region(
            name=name,
            code=code,
            region_type=region_type,
            parent_id=parent_id,
            boundary=boundary,
        )
        db.add(region)
        db.commit()
        return region
    return _make


@pytest.fixture
def make_occurrence(db):
    def _make(crime_type_id, latitude=-23.5505, longitude=-46.6333, region_id=None,
              severity=SeverityEnum.HIGH, source=OccurrenceSourceEnum.COLLABORATIVE,
              confidence_score=2, status=OccurrenceStatusEnum.ACTIVE,
              timestamp=None, expires_at="default", created_by=1):
        now = utcnow()
        if expires_at == "default":
            expires_at = None if source == OccurrenceSourceEnum.OFFICIAL else now + timedelta(days=7)
        occurrence = Occurrence(
            timestamp=timestamp or now,
            latitude=latitude,
            longitude=longitude,
            crime_type_id=crime_type_id,
            severity=severity,
            confidence_score=confidence_score,
            source=source,
            region_id=region_id,
            status=status,
            expires_at=expires_at,
            created_by=created_by,
            created_at=now,
        )
        db.add(occurrence)
        db.commit()
        return occurrence
    return _make
