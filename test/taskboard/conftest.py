"""
Shared fixtures for task board tests.

Every test gets its own temporary SQLite file, attachment directory and
EventHub, so tests never share ordering state or subscribers.
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from fastapi.testclient import TestClient

from taskboard import api
from taskboard.attachments import AttachmentStore
from taskboard.database import BoardDatabase
from taskboard.realtime import EventHub

OWNER = "owner-1"
OTHER_OWNER = "owner-2"


@pytest.fixture
def db(tmp_path):
    database = BoardDatabase(str(tmp_path / "board.db"))
    yield database
    database.close()


@pytest.fixture
def store(tmp_path):
    return AttachmentStore(str(tmp_path / "uploads"))


@pytest.fixture
def hub():
    events = EventHub(reconnect_ms=3000, max_pending=16)
    yield events
    events.close_all()


@pytest.fixture
def board(db):
    """A board with one column holding tasks A, B, C, D at positions 0..3."""
    created = db.create_board(OWNER, "Roadmap")
    column = db.create_column(created["id"], "To do")
    tasks = [db.create_task(column["id"], title) for title in ("A", "B", "C", "D")]
    return {"board": created, "column": column, "tasks": tasks}


@pytest.fixture
def client(db, store, hub):
    """TestClient wired to the per-test database, storage and hub, without the lifespan."""
    api.app.dependency_overrides[api.get_database] = lambda: db
    api.app.dependency_overrides[api.get_attachments] = lambda: store
    api.app.dependency_overrides[api.get_hub] = lambda: hub
    test_client = TestClient(api.app)
    yield test_client
    api.app.dependency_overrides.clear()


def headers(uid: str = OWNER):
    return {"X-Client-Id": uid}


def titles(tasks):
    return [task["title"] for task in tasks]


def positions(rows):
    return [row["position"] for row in rows]
