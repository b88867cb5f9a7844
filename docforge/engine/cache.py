"""
DocForge Redis Cache Layer — Capability cache in front of the role store.

Key layout (prefix ``docforge:``):
  roles:{user_id}              JSON list of role ids
  caps:{user_id}:{capability}  "1" (granted) | "0" (denied)

All Redis data is ephemeral and reconstructible from the role store.
Entries are removed explicitly through ``CachedPermissionLookup.invalidate``
when the host changes role assignments, and otherwise expire after the TTL.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional, Set

import redis

from docforge.engine.context import PermissionLookup

logger = logging.getLogger("docforge.engine.cache")


class RedisCache:
    """
    Redis cache wrapper with typed operations and circuit breaker.

    Falls back to pass-through mode on Redis failure (circuit breaker
    pattern): reads miss and writes are dropped until the window elapses.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/2",
        prefix: str = "docforge:",
        default_ttl: int = 300,
        db: Optional[int] = None,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._db = db
        self._client: Optional[redis.Redis] = None
        self._available = False

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = 5
        self._failure_window = 30  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Initialize Redis connection."""
        kwargs: dict = {}
        if self._db is not None:
            kwargs["db"] = self._db
        try:
            self._client = redis.Redis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                **kwargs,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info("Redis connected: %s (%s)", self._redis_url, self._prefix)
            return True
        except (redis.RedisError, OSError) as e:
            logger.warning("Redis connection failed (%s): %s", self._redis_url, e)
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self) -> None:
        now = time.time()
        if self._failure_count == 0:
            self._first_failure_time = now

        self._failure_count += 1

        if self._failure_count >= self._failure_threshold:
            elapsed = now - self._first_failure_time
            if elapsed <= self._failure_window:
                self._circuit_open = True
                logger.error(
                    "Redis circuit breaker OPEN: %d failures in %.1fs",
                    self._failure_count,
                    elapsed,
                )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # ── Core Operations ──

    def get(self, key: str) -> Optional[str]:
        """Get a value from cache. Returns None on miss or failure."""
        if not self._check_circuit():
            return None
        try:
            return self._client.get(self._make_key(key))
        except redis.RedisError as e:
            self._record_failure()
            logger.debug("Redis GET failed: %s", e)
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value with optional TTL. Returns False on failure."""
        if not self._check_circuit():
            return False
        try:
            self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl)
            return True
        except redis.RedisError as e:
            self._record_failure()
            logger.debug("Redis SET failed: %s", e)
            return False

    def delete(self, key: str) -> bool:
        if not self._check_circuit():
            return False
        try:
            self._client.delete(self._make_key(key))
            return True
        except redis.RedisError:
            self._record_failure()
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern. Returns count deleted."""
        if not self._check_circuit():
            return 0
        try:
            keys = list(self._client.scan_iter(match=self._make_key(pattern), count=1000))
            if keys:
                return self._client.delete(*keys)
            return 0
        except redis.RedisError:
            self._record_failure()
            return 0

    # ── JSON Operations ──

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            return self.set(key, json.dumps(value, default=str), ttl=ttl)
        except (TypeError, ValueError):
            return False

    # ── Health & Management ──

    def ping(self) -> bool:
        if not self._client:
            return False
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        """Close the Redis connection and release resources."""
        if self._client is not None:
            try:
                self._client.close()
            except redis.RedisError as e:
                logger.debug("Redis close failed: %s", e)
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


# ---------------------------------------------------------------------------
# Cached permission lookup
# ---------------------------------------------------------------------------

class CachedPermissionLookup:
    """
    PermissionLookup that answers from Redis before asking the role store.

    When Redis is down every call goes straight to the wrapped lookup.
    """

    def __init__(self, inner: PermissionLookup, cache: RedisCache):
        self._inner = inner
        self._cache = cache

    def role_ids(self, user_id: int) -> Set[int]:
        key = f"roles:{user_id}"
        cached = self._cache.get_json(key)
        if isinstance(cached, list):
            return {int(r) for r in cached}
        roles = set(self._inner.role_ids(user_id))
        self._cache.set_json(key, sorted(roles))
        return roles

    def has_capability(self, user_id: int, capability: str) -> bool:
        key = f"caps:{user_id}:{capability}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached == "1"
        allowed = bool(self._inner.has_capability(user_id, capability))
        self._cache.set(key, "1" if allowed else "0")
        return allowed

    def invalidate(self, user_id: Optional[int] = None) -> int:
        """Invalidate cached answers for one user, or for all users."""
        if user_id is None:
            return self._cache.delete_pattern("roles:*") + self._cache.delete_pattern("caps:*")
        removed = 1 if self._cache.delete(f"roles:{user_id}") else 0
        return removed + self._cache.delete_pattern(f"caps:{user_id}:*")


def create_permission_cache(
    inner: PermissionLookup,
    redis_url: str,
    ttl: int = 300,
) -> CachedPermissionLookup:
    """Connect a RedisCache and wrap ``inner`` with it."""
    cache = RedisCache(redis_url=redis_url, prefix="docforge:", default_ttl=ttl)
    cache.connect()
    return CachedPermissionLookup(inner, cache)
