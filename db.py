"""Engine, sessions and the in-process locks that serialize matching writes."""
import os
import threading
from collections import defaultdict

from sqlmodel import Session, SQLModel, create_engine

DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(os.path.dirname(os.path.abspath(__file__)), "parcels.db"),
)


def make_engine(url: str):
    """Engine for ``url``; SQLite connections are shared across worker threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = make_engine(DATABASE_URL)

# one re-entrant lock per name: "send:<id>", "deliverer:<user id>", "response:<id>", "index:<key>"
_named_locks = defaultdict(threading.RLock)
_registry_guard = threading.Lock()


def get_lock(name: str) -> threading.RLock:
    with _registry_guard:
        return _named_locks[name]


def init_db():
    import models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    return Session(engine)
