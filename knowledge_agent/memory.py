"""In-process conversational memory for follow-up resolution.

Keeps the last query and the last resolved entity per user identity so a
follow-up like "what does she do?" can be grounded on the previous turn.
Nothing is persisted; entries live for the process lifetime at most, and
expire after ``ttl_seconds`` of inactivity. Past ``max_users`` entries the
least recently touched user is evicted.

Each mutation is a single locked write. Two concurrent requests for the same
user are not serialized: last write wins, and a request may not observe the
write of another request that is still in flight.
"""

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_USERS = 10000


@dataclass(frozen=True)
class MemoryRecord:
    """Snapshot of what is remembered for one user."""
    last_query: Optional[str] = None
    last_entity: Optional[str] = None


class ConversationMemory:
    """Thread-safe keyed store of MemoryRecords with TTL expiry."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_users: Optional[int] = None,
        clock=time.monotonic,
    ):
        if ttl_seconds is None:
            ttl_seconds = float(os.getenv("MEMORY_TTL_SECONDS", DEFAULT_TTL_SECONDS))
        if max_users is None:
            max_users = int(os.getenv("MEMORY_MAX_USERS", DEFAULT_MAX_USERS))
        self.ttl_seconds = ttl_seconds
        self.max_users = max_users
        self._clock = clock
        self._lock = threading.Lock()
        # user_id -> (record, expires_at), least recently touched first
        self._records: "OrderedDict[str, tuple[MemoryRecord, float]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> MemoryRecord:
        """Return the user's record; absent fields if unseen or expired."""
        with self._lock:
            item = self._records.get(user_id)
            if item is None:
                return MemoryRecord()
            record, expires_at = item
            if expires_at <= self._clock():
                del self._records[user_id]
                return MemoryRecord()
            return record

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_query(self, user_id: str, query: str):
        self._update(user_id, last_query=query)

    def set_entity(self, user_id: str, entity: str):
        self._update(user_id, last_entity=entity)

    def _update(self, user_id: str, **fields):
        with self._lock:
            now = self._clock()
            item = self._records.pop(user_id, None)
            record = MemoryRecord()
            if item is not None and item[1] > now:
                record = item[0]
            merged = {
                "last_query": record.last_query,
                "last_entity": record.last_entity,
                **fields,
            }
            self._records[user_id] = (MemoryRecord(**merged), now + self.ttl_seconds)
            self._evict(now)

    def _evict(self, now: float):
        """Drop expired entries, then the oldest ones past max_users.

        Every write moves its user to the end with ``now + ttl_seconds``, so
        expiry times ascend from the front and the purge stops at the first
        live entry.
        """
        while self._records:
            uid, (_, expires_at) = next(iter(self._records.items()))
            if expires_at > now:
                break
            del self._records[uid]
        while len(self._records) > self.max_users:
            uid, _ = self._records.popitem(last=False)
            logger.debug("Evicted conversation memory for %s", uid)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear(self):
        with self._lock:
            self._records.clear()

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            alive = sum(1 for _, exp in self._records.values() if exp > now)
            return {
                "users": len(self._records),
                "alive": alive,
                "ttl_seconds": self.ttl_seconds,
                "max_users": self.max_users,
            }
