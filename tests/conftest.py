import uuid
from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from database import DocumentStore
from schemas import UserIdentity


class Clock:
    """Settable clock for code that takes ``clock=``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def database():
    return mongomock.MongoClient()[f"test_{uuid.uuid4().hex}"]


@pytest.fixture
def store(database):
    return DocumentStore(database)


@pytest.fixture
def second_device(database, store):
    """Another client of the same backend sharing live listeners."""
    return DocumentStore(database, listeners=store.listeners)


@pytest.fixture
def offline_store():
    return DocumentStore(None)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def alice():
    return UserIdentity(uid="alice", display_name="Alice", email="alice@example.com")


@pytest.fixture
def bob():
    return UserIdentity(uid="bob", display_name="Bob")


@pytest.fixture
def carol():
    return UserIdentity(uid="carol")
