"""Shared pytest fixtures for class stats engine tests."""

from datetime import datetime, timezone

import pytest
from unittest.mock import patch, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from classstats.db.models import ClassRoom, ScheduleItem
from classstats.db.session import Base, get_db
from classstats.main import app


# Use an in-memory SQLite database for testing with static pool
SQLALCHEMY_TEST_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def engine():
    """Fresh schema per test; the engine commits, so rollback alone cannot isolate."""
    eng = create_engine(
        SQLALCHEMY_TEST_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Use StaticPool to keep connection alive
        echo=False,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture(autouse=True)
def mock_celery_tasks():
    """Mock Celery tasks for all tests to prevent Redis connection."""
    mock_task = MagicMock(return_value=MagicMock(id="fake-task-id"))
    mock_task.delay = MagicMock(return_value=MagicMock(id="fake-task-id"))

    # Patch at the import point in the events module
    with patch("classstats.api.events.process_quiz_event_task", mock_task):
        yield mock_task


@pytest.fixture(scope="function")
def db(engine):
    """Get a fresh DB session for each test."""
    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestSession()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def client(db: Session):
    """FastAPI test client with overridden DB dependency."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ── Roster seed ────────────────────────────────────────────────────────────────


@pytest.fixture
def klass(db: Session) -> ClassRoom:
    """Class ``c1`` in Singapore time."""
    c = ClassRoom(id="c1", name="Sec 3 Maths", timezone="Asia/Singapore")
    db.add(c)
    db.commit()
    return c


@pytest.fixture
def schedule(db: Session, klass: ClassRoom) -> ScheduleItem:
    """Schedule ``s1`` (contribution 100) of quiz ``q1`` in class ``c1``."""
    s = ScheduleItem(
        id="s1",
        class_id=klass.id,
        quiz_id="q1",
        quiz_root_id="q1",
        quiz_version=1,
        quiz_name="Fractions",
        subject="Math",
        topic="Fractions",
        contribution=100.0,
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end_date=None,
    )
    db.add(s)
    db.commit()
    return s
