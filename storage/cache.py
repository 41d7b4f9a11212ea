"""
SQLite cache for source-host responses and the rate-limit-aware request helpers built on it.
Entries are raw JSON bodies keyed by service+resource (e.g. "github:contents:owner/repo@main:lib/main.dart").
"""

import sqlite3
import json
import time
import logging
from typing import Optional, Any, Dict
import threading

from .retry import perform_request_with_retries, configure_retry

logger = logging.getLogger(__name__)

DB_PATH = None  # can be overridden by caller

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS http_cache (
    key TEXT PRIMARY KEY,
    response TEXT,
    status INTEGER,
    timestamp REAL
);
"""


class Cache:
    def __init__(self, path: Optional[str] = None, max_entries: Optional[int] = None, ttl_seconds: Optional[float] = None):
        """Create a cache instance.

        :param path: SQLite file path or None for in-memory.
        :param max_entries: optional maximum number of entries to keep; the oldest are pruned first.
        :param ttl_seconds: optional TTL in seconds; expired entries are pruned on set and ignored on get.
        """
        self.path = path or DB_PATH or ':memory:'
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._lock = threading.RLock()
        self.max_entries = int(max_entries) if max_entries is not None else None
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds is not None else None
        self._init_db()

    def _init_db(self):
        with self._lock:
            self.conn.executescript(SQL_CREATE)
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                finally:
                    self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # noinspection SqlResolve
    def stats(self) -> Dict[str, Any]:
        """Return entry count and the oldest/newest timestamps."""
        with self._lock:
            cur = self.conn.execute('SELECT COUNT(1), MIN(timestamp), MAX(timestamp) FROM http_cache')
            count, oldest, newest = cur.fetchone()
        return {
            'path': self.path,
            'count': int(count or 0),
            'oldest': float(oldest) if oldest is not None else None,
            'newest': float(newest) if newest is not None else None,
        }

    # noinspection SqlResolve
    def list_keys(self, limit: int = 1000) -> list:
        """Return cache keys with status and timestamp, newest first."""
        with self._lock:
            cur = self.conn.execute('SELECT key, status, timestamp FROM http_cache ORDER BY timestamp DESC LIMIT ?', (limit,))
            rows = cur.fetchall()
        return [{'key': k, 'status': int(status or 0), 'timestamp': float(ts or 0)} for k, status, ts in rows]

    # noinspection SqlWithoutWhere
    def clear(self):
        with self._lock:
            self.conn.execute('DELETE FROM http_cache')
            self.conn.commit()

    # noinspection SqlResolve
    def delete_key(self, key: str) -> int:
        """Delete a specific cache key. Returns number of rows deleted."""
        with self._lock:
            cur = self.conn.execute('DELETE FROM http_cache WHERE key = ?', (key,))
            self.conn.commit()
            return cur.rowcount

    # noinspection SqlResolve
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.execute('SELECT response, status, timestamp FROM http_cache WHERE key = ?', (key,))
            row = cur.fetchone()
        if not row:
            return None
        response, status, timestamp = row
        if self.ttl_seconds is not None and timestamp is not None and time.time() - float(timestamp) > self.ttl_seconds:
            self.delete_key(key)
            return None
        try:
            parsed = json.loads(response)
        except (TypeError, ValueError):
            parsed = response
        return {'response': parsed, 'status': status, 'timestamp': timestamp}

    # noinspection SqlResolve
    def _prune_if_needed(self):
        with self._lock:
            if self.ttl_seconds is not None:
                cutoff = time.time() - float(self.ttl_seconds)
                self.conn.execute('DELETE FROM http_cache WHERE timestamp < ?', (cutoff,))
            if self.max_entries is not None:
                count = self.conn.execute('SELECT COUNT(1) FROM http_cache').fetchone()[0] or 0
                if count > self.max_entries:
                    self.conn.execute(
                        'DELETE FROM http_cache WHERE key IN (SELECT key FROM http_cache ORDER BY timestamp ASC LIMIT ?)',
                        (int(count - self.max_entries),),
                    )
            self.conn.commit()

    # noinspection SqlResolve
    def set(self, key: str, response: Any, status: int = 200):
        try:
            payload = json.dumps(response)
        except (TypeError, ValueError):
            payload = json.dumps(str(response))
        with self._lock:
            self.conn.execute('REPLACE INTO http_cache(key, response, status, timestamp) VALUES (?, ?, ?, ?)', (key, payload, status, time.time()))
            self.conn.commit()
            self._prune_if_needed()


def _cached_fresh(cache: Optional[Cache], cache_key: Optional[str], max_age: Optional[float]):
    if not cache or not cache_key:
        return None
    cached = cache.get(cache_key)
    if not cached:
        return None
    if max_age is None:
        return cached
    age = time.time() - float(cached.get('timestamp', 0) or 0)
    return cached if age <= float(max_age) else None


def rate_limited_get(
    url: str,
    headers: Dict[str, str] = None,
    params: Dict[str, Any] = None,
    cache: Cache = None,
    cache_key: str = None,
    min_wait: float = 0.5,
    max_age: Optional[float] = None,
    max_retries: int = 3,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """GET with caching, rate-limit handling, retries and a timeout.

    Checks the cache first (honoring max_age); only 200 responses are ever written back.
    """
    cached = _cached_fresh(cache, cache_key, max_age)
    if cached:
        logger.debug("cache hit for %s", cache_key)
        return cached
    return perform_request_with_retries(url, headers or {}, params or {}, cache, cache_key or '', min_wait, max_retries, timeout=timeout)


def rate_limited_request(
    method: str,
    url: str,
    headers: Dict[str, str] = None,
    params: Dict[str, Any] = None,
    json_body: Any = None,
    min_wait: float = 0.5,
    max_retries: int = 3,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Uncached variant for non-idempotent calls such as generative-model prompts."""
    return perform_request_with_retries(
        url, headers or {}, params or {}, None, '', min_wait, max_retries, method=method, json_body=json_body, timeout=timeout
    )


__all__ = ["Cache", "rate_limited_get", "rate_limited_request", "configure_retry"]
