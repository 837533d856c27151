"""
Shared rate-window stores.

Backends for the rate limiter that survive beyond a single process: a SQLite
table for several workers on one host, and Redis for multi-instance
deployments.
"""

import logging

import redis

from variation_guard.core.rate_limit import RateDecision, RateWindowStore
from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)


class SqliteRateWindowStore(RateWindowStore):
    """Rate windows in the ``rate_window`` table.

    Check-and-increment runs inside one ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def hit(self, key: str, limit: int, window_seconds: int, now: float) -> RateDecision:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT count, window_reset_at FROM rate_window WHERE key = ?", (key,)
            ).fetchone()

            if row is None or now >= row[1]:
                reset_at = now + window_seconds
                conn.execute(
                    "INSERT OR REPLACE INTO rate_window (key, count, window_reset_at) VALUES (?, 1, ?)",
                    (key, reset_at)
                )
                decision = RateDecision(allowed=True, count=1, limit=limit, reset_at=reset_at)
            elif row[0] < limit:
                count = row[0] + 1
                conn.execute("UPDATE rate_window SET count = ? WHERE key = ?", (count, key))
                decision = RateDecision(allowed=True, count=count, limit=limit, reset_at=row[1])
            else:
                decision = RateDecision(allowed=False, count=row[0], limit=limit, reset_at=row[1])

            conn.commit()
            return decision
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def reset(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM rate_window WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


class RedisRateWindowStore(RateWindowStore):
    """Rate windows as Redis counters whose TTL is the window.

    ``SET NX EX`` opens the window, ``INCR`` counts the attempt and ``PTTL``
    reports when it closes; all three run in one MULTI/EXEC block. Attempts
    past the limit keep incrementing the counter, which only affects the
    reported count, never the window.
    """

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisRateWindowStore":
        client = redis.Redis.from_url(redis_url)
        logger.info("Rate limiter using Redis backend at %s", redis_url)
        return cls(client)

    def hit(self, key: str, limit: int, window_seconds: int, now: float) -> RateDecision:
        pipe = self.client.pipeline(transaction=True)
        pipe.set(key, 0, ex=window_seconds, nx=True)
        pipe.incr(key)
        pipe.pttl(key)
        _, count, ttl_ms = pipe.execute()

        count = int(count)
        if ttl_ms is None or ttl_ms < 0:
            # Key lost its expiry; pin it so the window cannot live forever.
            self.client.expire(key, window_seconds)
            ttl_ms = window_seconds * 1000
        reset_at = now + ttl_ms / 1000.0

        if count <= limit:
            return RateDecision(allowed=True, count=count, limit=limit, reset_at=reset_at)
        return RateDecision(allowed=False, count=limit, limit=limit, reset_at=reset_at)

    def reset(self, key: str) -> None:
        self.client.delete(key)
