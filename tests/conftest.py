"""
Shared fixtures: a temporary SQLite database and an engine wired to an
in-memory directory and an in-memory notification sink.
"""

import os
import tempfile

import pytest

from approvalflow.database import Database
from approvalflow.directory import InMemoryUserDirectory
from approvalflow.engine import AssignmentEngine
from approvalflow.models import Reviewer, RetryPolicy, RetryStrategy
from approvalflow.notifications import InMemoryNotificationSink, NotificationDispatcher
from approvalflow.settings import SettingsStore
from approvalflow.store import ReviewableItemStore

NO_WAIT = RetryPolicy(strategy=RetryStrategy.NONE, max_retries=2)


@pytest.fixture
def db():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(f"sqlite:///{db_path}")
    db.create_tables()
    yield db

    db.engine.dispose()
    os.unlink(db_path)


@pytest.fixture
def store(db):
    return ReviewableItemStore(db, retry_policy=NO_WAIT)


@pytest.fixture
def settings_store(db):
    return SettingsStore(db, retry_policy=NO_WAIT)


@pytest.fixture
def reviewers():
    return [
        Reviewer(id="u1", display_name="Ana", role="admin", department="Legal & Compliance"),
        Reviewer(id="u2", display_name="Ben", role="decision_maker", department="IT"),
        Reviewer(id="u3", display_name="Cleo", role="decision_maker", department="Legal & Compliance"),
        Reviewer(id="u9", display_name="Dev", role="developer", department="R&D"),
    ]


@pytest.fixture
def directory(reviewers, store):
    return InMemoryUserDirectory(reviewers, workload=store.open_assignment_counts)


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def dispatcher(sink):
    return NotificationDispatcher([sink], retry_policy=NO_WAIT)


@pytest.fixture
def engine(store, directory, settings_store, dispatcher):
    return AssignmentEngine(store, directory, settings_store, dispatcher=dispatcher)
