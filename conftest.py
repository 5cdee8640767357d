import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent
TEST_DATABASE_URL = "sqlite:///./interview-prep-test.db"

# Must be set before the app modules build their engine / metrics sink
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("AWS_EMF_ENVIRONMENT", "Local")
os.environ.setdefault("LOG_FORMAT", "console")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# --- Alembic Imports ---
from alembic.config import Config  # noqa: E402
from alembic import command  # noqa: E402

# Import app and dependency functions first
from main import app, get_cache_registry, get_db  # noqa: E402

# Import database components needed for setup
import database  # noqa: E402
import models  # noqa: E402
from cache_tags import CacheTagRegistry  # noqa: E402
from database import Base  # noqa: E402

connect_args = (
    {"check_same_thread": False} if TEST_DATABASE_URL.startswith("sqlite") else {}
)
test_engine = create_engine(TEST_DATABASE_URL, connect_args=connect_args)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def _remove_db_files(db_path: str) -> None:
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        if os.path.exists(path):
            try:
                os.unlink(path)
            except OSError as e:
                print(f"Error removing test database file {path}: {e}")


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create the test database from models and stamp with Alembic head."""
    db_path = TEST_DATABASE_URL.split("///")[-1]
    # The app engine opened the file at import time
    database.engine.dispose()
    _remove_db_files(db_path)

    print(f"Creating test database tables from models at {db_path}")
    Base.metadata.create_all(bind=test_engine)

    print("Stamping database with Alembic head revision")
    alembic_cfg = Config(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.stamp(alembic_cfg, "head")

    yield  # Tests run here

    test_engine.dispose()
    database.engine.dispose()
    _remove_db_files(db_path)


@pytest.fixture(scope="function")
def db_session(setup_test_database):
    """Yields a SQLAlchemy session directly from the test factory."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def cache_registry():
    """A fresh tag cache per test."""
    return CacheTagRegistry(max_entries=256)


@pytest.fixture(scope="function")
def override_get_db(cache_registry):
    """Point the app at the test database and the per-test cache registry."""

    def _override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_cache_registry] = lambda: cache_registry

    yield

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_client(override_get_db):
    """Provides a test client configured with our test database session."""
    return TestClient(app)


# --- Factories --- #
@pytest.fixture
def make_user(db_session):
    def _make_user(plan: str = "free") -> models.User:
        suffix = uuid.uuid4().hex[:12]
        user = models.User(
            email=f"user-{suffix}@example.com",
            cognito_sub=f"sub-{suffix}",
            plan=plan,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_job_info(db_session):
    def _make_job_info(user: models.User, name: str = "Backend Engineer", **kwargs) -> models.JobInfo:
        job_info = models.JobInfo(
            user_id=user.id,
            name=name,
            title=kwargs.pop("title", "Senior Backend Engineer"),
            experience_level=kwargs.pop("experience_level", "senior"),
            description=kwargs.pop("description", "Build and run Python web services."),
            **kwargs,
        )
        db_session.add(job_info)
        db_session.commit()
        db_session.refresh(job_info)
        return job_info

    return _make_job_info


@pytest.fixture
def make_question(db_session):
    base_time = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def _make_question(
        job_info: models.JobInfo,
        text: str = "Explain how a Python dict handles hash collisions.",
        answer=None,
        feedback=None,
        feedback_rating=None,
        difficulty: str = "medium",
        updated_minutes: int = 0,
    ) -> models.Question:
        timestamp = base_time + timedelta(minutes=updated_minutes)
        question = models.Question(
            job_info_id=job_info.id,
            text=text,
            difficulty=difficulty,
            answer=answer,
            feedback=feedback,
            feedback_rating=feedback_rating,
            created_at=timestamp,
            updated_at=timestamp,
        )
        db_session.add(question)
        db_session.commit()
        db_session.refresh(question)
        return question

    return _make_question
