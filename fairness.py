"""Fairness selector: round-robin over eligible deliverers with a shared index.

The index grows forever and is wrapped with ``mod len(candidates)`` at read
time. Reading the current value and writing the increment is one atomic step
in both backends: a row lock in the database, ``INCR`` in Redis.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import List, Optional

import redis
from sqlalchemy.exc import IntegrityError

from config import DistributionStrategy, Settings
from capacity import LoadedCandidate
from db import get_lock
from models import RoundRobinCursor

logger = logging.getLogger(__name__)

CURSOR_KEY = "round_robin_deliverer_index"


class DatabaseIndexStore:
    """Index kept in the ``roundrobincursor`` table.

    ``next_index`` commits the increment on the given session, so call it
    before any other writes of the surrounding operation.
    """

    def __init__(self, session, key: str = CURSOR_KEY, ttl_seconds: int = 86400):
        self.session = session
        self.key = key
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _live_value(cursor: Optional[RoundRobinCursor]) -> int:
        if cursor is None or cursor.expires_at <= datetime.utcnow():
            return 0
        return cursor.value

    def next_index(self, n: int) -> int:
        with get_lock(f"index:{self.key}"):
            cursor = self.session.get(RoundRobinCursor, self.key, with_for_update=True)
            current = self._live_value(cursor)
            if cursor is None:
                cursor = RoundRobinCursor(key=self.key)
            cursor.value = current + 1
            cursor.expires_at = datetime.utcnow() + timedelta(seconds=self.ttl_seconds)
            self.session.add(cursor)
            try:
                self.session.commit()
            except IntegrityError:
                # another process created the cursor row first
                self.session.rollback()
                return self.next_index(n)
        logger.debug("Round-robin index %s -> %s", current, current + 1)
        return current % n

    def peek(self) -> int:
        return self._live_value(self.session.get(RoundRobinCursor, self.key))

    def reset(self):
        cursor = self.session.get(RoundRobinCursor, self.key)
        if cursor is not None:
            self.session.delete(cursor)
            self.session.flush()
        logger.info("Round-robin index reset")

    def state(self) -> dict:
        return {"current_index": self.peek(), "cache_key": self.key, "cache_ttl": self.ttl_seconds, "backend": "database"}


class RedisIndexStore:
    """Index kept in Redis; ``INCR`` makes read-and-increment a single operation."""

    def __init__(self, client: redis.Redis, key: str = CURSOR_KEY, ttl_seconds: int = 86400):
        self.client = client
        self.key = key
        self.ttl_seconds = ttl_seconds

    def next_index(self, n: int) -> int:
        value = int(self.client.incr(self.key))
        self.client.expire(self.key, self.ttl_seconds)
        return (value - 1) % n

    def peek(self) -> int:
        value = self.client.get(self.key)
        return int(value) if value is not None else 0

    def reset(self):
        self.client.delete(self.key)
        logger.info("Round-robin index reset")

    def state(self) -> dict:
        return {"current_index": self.peek(), "cache_key": self.key, "cache_ttl": self.ttl_seconds, "backend": "redis"}


def get_index_store(session, settings: Settings):
    if settings.redis_url:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisIndexStore(client, ttl_seconds=settings.round_robin_ttl_seconds)
    return DatabaseIndexStore(session, ttl_seconds=settings.round_robin_ttl_seconds)


def select_round_robin(candidates: List[LoadedCandidate], store) -> Optional[LoadedCandidate]:
    """Pick ``candidates[i mod n]`` in stable request-id order, then advance ``i``."""
    if not candidates:
        return None
    ordered = sorted(candidates, key=lambda c: c.request.id)
    index = store.next_index(len(ordered))
    selected = ordered[index]
    logger.info(
        "Round-robin selected deliverer %s (index %d of %d, deliverers=%s)",
        selected.user_id, index, len(ordered), [c.user_id for c in ordered],
    )
    return selected


def select_deliverer(candidates: List[LoadedCandidate], strategy: DistributionStrategy,
                     store) -> Optional[LoadedCandidate]:
    """Apply the configured strategy to a capacity-filtered, least-loaded-first list."""
    if not candidates:
        return None
    if strategy == DistributionStrategy.ROUND_ROBIN:
        return select_round_robin(candidates, store)
    if strategy == DistributionStrategy.RANDOM:
        return random.choice(candidates)
    return candidates[0]

