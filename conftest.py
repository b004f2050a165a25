import pytest
import os

TEST_DATABASE_URL = "sqlite:///./interview-coach-test.db"

# Must be set before the app modules build their engine, settings and metrics config
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["GEMINI_API_KEY"] = ""
os.environ["AWS_EMF_ENVIRONMENT"] = "Local"
os.environ["LOG_FORMAT"] = "console"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

# Import app and DB dependency function first
from main import app, get_db

# Import database components needed for setup
from database import Base
import logic
import models

connect_args = (
    {"check_same_thread": False} if TEST_DATABASE_URL.startswith("sqlite") else {}
)
test_engine = create_engine(TEST_DATABASE_URL, connect_args=connect_args)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create the test database from models."""
    db_path = TEST_DATABASE_URL.split("///")[-1]
    Base.metadata.create_all(bind=test_engine)

    yield  # Tests run here

    test_engine.dispose()
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        if os.path.exists(path):
            try:
                os.unlink(path)
            except OSError as e:
                print(f"Error removing test database file {path}: {e}")


@pytest.fixture(autouse=True)
def clean_store(setup_test_database):
    """Every test starts with an empty key/value store and no pending submissions."""
    yield
    logic._IN_FLIGHT.clear()
    db = TestSessionLocal()
    try:
        db.query(models.KeyValueEntry).delete()
        db.commit()
    finally:
        db.close()


@pytest.fixture(scope="function") # Function scope for session
def db_session(setup_test_database): # Depends on DB setup
    """Yields a SQLAlchemy session directly from the test factory."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override the get_db dependency for tests
@pytest.fixture(scope="function")
def override_get_db():
    """Override the get_db dependency to use our test database.

    This creates a new session for each API call, allowing proper
    transaction handling within FastAPI endpoints.
    """

    def _override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    original = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = _override_get_db

    yield

    if original:
        app.dependency_overrides[get_db] = original
    else:
        del app.dependency_overrides[get_db]


@pytest.fixture(scope="function")
def test_client(override_get_db):
    """Provides a test client configured with our test database session."""
    return TestClient(app, raise_server_exceptions=False)
