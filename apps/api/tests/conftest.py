"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database: the schema is created
before each test and dropped after it, so nothing leaks between tests.
Redis caching is disabled and Celery `.delay` calls are patched per test.
"""
import os
import sys

# Settings are read at import time, so the environment must be ready first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters")
os.environ["CACHE_ENABLED"] = "false"
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "test")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from core.database import Base, SessionLocal, engine, get_db
from core.security import create_access_token
from models import Activity, Athlete
from services.strava_service import store_tokens
from services.token_encryption import reset_token_encryption

TEST_ENCRYPTION_KEY = "a1" * 32


@pytest.fixture(autouse=True)
def _token_encryption_key(monkeypatch):
    """Encrypt tokens with a fixed test key; the singleton re-reads settings."""
    from core.config import settings

    monkeypatch.setattr(settings, "TOKEN_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    reset_token_encryption()
    yield
    reset_token_encryption()


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_athlete(db_session):
    athlete = Athlete(
        email=f"test_{uuid4()}@example.com",
        display_name="Test Athlete",
        birthdate=date(1990, 1, 1),
        sex="M",
        max_hr=190,
        resting_hr=50,
    )
    db_session.add(athlete)
    db_session.commit()
    db_session.refresh(athlete)
    return athlete


@pytest.fixture
def connected_athlete(db_session, test_athlete):
    """test_athlete with encrypted Strava tokens valid for six hours."""
    store_tokens(test_athlete, {
        "access_token": "access",
        "refresh_token": "refresh",
        "expires_at": int((datetime.now(timezone.utc) + timedelta(hours=6)).timestamp()),
    })
    test_athlete.strava_athlete_id = 777
    db_session.commit()
    return test_athlete


@pytest.fixture
def auth_headers(test_athlete):
    token = create_access_token({"sub": str(test_athlete.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db_session):
    """TestClient whose requests share the test's session."""
    from main import app

    def _override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_activity(db_session):
    """Factory for runs on a given day; distance in meters, duration in seconds."""

    def _make(athlete, day, distance_m=8046.7, duration_s=2400, **kwargs):
        start = kwargs.pop(
            "start_time",
            datetime(day.year, day.month, day.day, 12, 0, tzinfo=timezone.utc),
        )
        activity = Activity(
            athlete_id=athlete.id,
            name=kwargs.pop("name", "Run"),
            start_time=start,
            local_date=day,
            sport="run",
            source=kwargs.pop("source", "manual"),
            duration_s=duration_s,
            distance_m=distance_m,
            workout_type=kwargs.pop("workout_type", "easy"),
            **kwargs,
        )
        db_session.add(activity)
        db_session.flush()
        return activity

    return _make


@pytest.fixture
def sample_race_times():
    """Sample race times for testing"""
    return {
        "5k_20min": (20 * 60, 5000),
        "marathon_3hr": (3 * 3600, 42195),
        "half_marathon_90min": (90 * 60, 21097.5),
        "one_mile_533": (5 * 60 + 33, 1609.34),
    }
