import os

os.environ["ENV"] = "test"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["SESSION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["SESSION_EXPIRY_MODE"] = "fixed"

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import app.models  # noqa: E402,F401
from app.config import Settings  # noqa: E402
from app.core.session_locks import SessionLockRegistry  # noqa: E402
from app.db import Base, build_engine  # noqa: E402

pytest_plugins = [
    "tests.fixtures.user_fixtures",
    "tests.fixtures.chat_session_fixtures",
]


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def settings():
    return Settings()


@pytest.fixture(scope="function")
def locks():
    return SessionLockRegistry()
