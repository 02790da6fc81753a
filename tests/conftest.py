import os
import sys
import threading
from collections import defaultdict

import pytest
from sqlmodel import SQLModel

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import db as db_mod
from config import Settings
from matching import Matcher
from notifications import Notifier


class RecordingNotifier(Notifier):
    """Collects notifications instead of sending them."""

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def notify(self, user_id, event, payload=None):
        if self.error is not None:
            raise self.error
        self.sent.append((user_id, event, payload or {}))

    def events_for(self, user_id):
        return [event for uid, event, _ in self.sent if uid == user_id]


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite database file with default settings."""
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = db_mod.make_engine(test_db)
    monkeypatch.setattr(db_mod, "engine", new_engine)
    monkeypatch.setattr(db_mod, "_named_locks", defaultdict(threading.RLock))
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.chdir(tmp_path)  # keep a stray .env out of the settings
    SQLModel.metadata.create_all(new_engine)
    yield
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def matcher(notifier):
    return Matcher(notifier=notifier)


@pytest.fixture
def capacity(monkeypatch):
    """Set max_deliverer_capacity for the rest of the test."""
    def _set(value):
        monkeypatch.setenv("MAX_DELIVERER_CAPACITY", str(value))
    return _set
