"""
Pytest configuration and shared fixtures.

Test settings are placed in the environment before any coursechat import so
the cached settings, the engine and the app are built with them.
"""

import os

os.environ.update({
    "DATABASE_URL": "sqlite:///./coursechat_test.db",
    "LOG_LEVEL": "WARNING",
    "SESSION_SECRET": "test-session-secret",
    "REQUIRE_AUTH": "true",
    "IDENTITY_MODE": "session",
    "PERSIST_PREFERENCES": "true",
})

import pytest
from sqlalchemy.orm import sessionmaker

# Clear settings cache before any app imports to ensure test env vars are used
from coursechat.config import get_settings
get_settings.cache_clear()

from coursechat import models  # noqa: E402,F401  (registers tables)
from coursechat.storage import Base, SessionLocal, engine, make_engine  # noqa: E402

# SQLite cannot create missing directories, so every connection attempt fails
UNREACHABLE_DATABASE_URL = "sqlite:////nonexistent-coursechat-dir/chat.db"


@pytest.fixture
def db():
    """Session on a fresh schema, dropped after the test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def broken_db():
    """Session whose store can never be reached."""
    broken_engine = make_engine(UNREACHABLE_DATABASE_URL)
    session = sessionmaker(autocommit=False, autoflush=False, bind=broken_engine)()
    try:
        yield session
    finally:
        session.close()
        broken_engine.dispose()
