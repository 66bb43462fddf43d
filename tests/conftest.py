"""
Pytest configuration and shared fixtures.

Environment defaults are set here before any chatsync import so that
settings and the engine pick up the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatsync.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from chatsync.main import app
from chatsync.storage import SessionLocal, Base, engine, create_user


ALICE = "u-alice"
BOB = "u-bob"
CAROL = "u-carol"


def headers_for(user_id: str) -> dict:
    return {"X-User-ID": user_id}


@pytest.fixture(scope="function")
def schema():
    """Fresh schema for each test."""
    from chatsync import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(schema):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    """Three known users: alice, bob and carol."""
    create_user(db, "Alice Liddell", "alice@example.com", user_id=ALICE)
    create_user(db, "Bob Builder", "bob@example.com", user_id=BOB)
    create_user(db, "Carol Danvers", "carol@example.com", user_id=CAROL)
    return {"alice": ALICE, "bob": BOB, "carol": CAROL}


@pytest.fixture(scope="function")
def client(users):
    """Test client over a fresh database seeded with users."""
    with TestClient(app) as test_client:
        yield test_client
