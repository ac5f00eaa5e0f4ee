"""Read-through cache for idempotent GET responses.

Entries are keyed by route, canonical query string and caller identity.
Invalidation goes through tags: every entry is written under the current
generation of each of its tags, and invalidating a tag bumps its generation
so older entries can no longer be addressed. They simply age out with their
TTL. A fill that races with an invalidation therefore lands under a stale
generation and is never served.

Backend failures never propagate out of this module: reads fall back to
computing the value, failed writes are dropped and failed invalidations are
reported to the caller as ``False``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Callable, Iterable, Optional, Sequence
from urllib.parse import urlencode

import redis

from config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache:"
TAG_PREFIX = "cachetag:"


class CacheClass(str, Enum):
    transactions = "transactions"
    categories = "categories"
    analytics = "analytics"
    profile = "profile"


DEFAULT_TTLS: dict[str, int] = {
    CacheClass.transactions.value: 300,
    CacheClass.categories.value: 3600,
    CacheClass.analytics.value: 900,
    CacheClass.profile.value: 1800,
}


class CacheError(Exception):
    pass


def user_tag(user_id: int, cache_class: CacheClass) -> str:
    return f"user:{user_id}:{cache_class.value}"


def transaction_tags(user_id: int) -> list[str]:
    return [
        user_tag(user_id, CacheClass.transactions),
        user_tag(user_id, CacheClass.analytics),
    ]


def category_tags() -> list[str]:
    return [
        CacheClass.categories.value,
        CacheClass.analytics.value,
        CacheClass.transactions.value,
    ]


def build_key(
    path: str, query_items: Iterable[tuple[str, str]], user_id: Optional[int]
) -> str:
    query = urlencode(sorted(query_items))
    identity = user_id if user_id is not None else "anonymous"
    return f"{KEY_PREFIX}{path}?{query}:{identity}"


class CacheStore:
    """Minimal key/value interface the cache and the rate limiter rely on."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        raise NotImplementedError

    def keys(self, pattern: str = "*") -> list[str]:
        raise NotImplementedError

    def delete_pattern(self, pattern: str) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """Thread-safe in-process store with TTL expiry, for development and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        with self._lock:
            return [self._live(k) for k in keys]

    def _sweep(self, now: float) -> None:
        # Entries under superseded tag generations are never read again.
        expired = [
            k
            for k, (_, expires_at) in self._data.items()
            if expires_at is not None and now >= expires_at
        ]
        for k in expired:
            del self._data[k]

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._data[key] = (value, now + ttl)

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        with self._lock:
            current = self._live(key)
            expires_at = self._data[key][1] if current is not None else None
            value = int(current or 0) + 1
            if current is None and ttl is not None:
                expires_at = self._clock() + ttl
            self._data[key] = (str(value), expires_at)
            return value

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if fnmatchcase(k, pattern)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def ping(self) -> bool:
        return True

    def keys(self, pattern: str = "*") -> list[str]:
        with self._lock:
            return [
                k
                for k in list(self._data)
                if fnmatchcase(k, pattern) and self._live(k) is not None
            ]


class RedisCacheStore(CacheStore):
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, timeout: float) -> "RedisCacheStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as exc:
            raise CacheError(str(exc)) from exc

    def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        if not keys:
            return []
        try:
            return self.client.mget(list(keys))
        except redis.RedisError as exc:
            raise CacheError(str(exc)) from exc

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self.client.setex(key, ttl, value)
        except redis.RedisError as exc:
            raise CacheError(str(exc)) from exc

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        try:
            value = int(self.client.incr(key))
            if value == 1 and ttl is not None:
                self.client.expire(key, ttl)
            return value
        except redis.RedisError as exc:
            raise CacheError(str(exc)) from exc

    def keys(self, pattern: str = "*") -> list[str]:
        try:
            return list(self.client.scan_iter(match=pattern, count=500))
        except redis.RedisError as exc:
            raise CacheError(str(exc)) from exc

    def delete_pattern(self, pattern: str) -> int:
        keys = self.keys(pattern)
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis.RedisError as exc:
            raise CacheError(str(exc)) from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


def create_store(settings: Settings) -> CacheStore:
    if settings.cache_url.startswith("memory://"):
        logger.info("cache_backend: kind=memory")
        return MemoryCacheStore()
    logger.info("cache_backend: kind=redis")
    return RedisCacheStore.from_url(settings.cache_url, settings.cache_timeout_secs)


class ReadThroughCache:
    def __init__(self, store: CacheStore, ttls: Optional[dict[str, int]] = None) -> None:
        self.store = store
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)

    def ttl_for(self, cache_class: CacheClass) -> int:
        return self.ttls[cache_class.value]

    def _versioned_key(self, key: str, tags: Sequence[str]) -> str:
        generations = self.store.get_many([f"{TAG_PREFIX}{t}" for t in tags])
        stamp = ".".join(g or "0" for g in generations)
        return f"{key}#{stamp}"

    def get_or_compute(
        self,
        key: str,
        cache_class: CacheClass,
        tags: Sequence[str],
        compute: Callable[[], Any],
    ) -> Any:
        try:
            versioned = self._versioned_key(key, tags)
            cached = self.store.get(versioned)
        except CacheError as exc:
            logger.warning(f"cache_read_failed: key={key} error={exc}")
            return compute()

        if cached is not None:
            try:
                value = json.loads(cached)
            except ValueError as exc:
                logger.warning(f"cache_decode_failed: key={key} error={exc}")
            else:
                logger.debug(f"cache_hit: key={key}")
                return value

        logger.debug(f"cache_miss: key={key}")
        value = compute()
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning(f"cache_encode_failed: key={key} error={exc}")
            return value
        try:
            self.store.set(versioned, payload, self.ttl_for(cache_class))
        except CacheError as exc:
            logger.warning(f"cache_write_failed: key={key} error={exc}")
        # Serve the decoded payload so a miss and a later hit are identical.
        return json.loads(payload)

    def invalidate(self, tags: Iterable[str]) -> bool:
        ok = True
        for tag in tags:
            try:
                generation = self.store.incr(f"{TAG_PREFIX}{tag}")
            except CacheError as exc:
                logger.warning(f"cache_invalidate_failed: tag={tag} error={exc}")
                ok = False
                continue
            logger.debug(f"cache_invalidated: tag={tag} generation={generation}")
        return ok

    def clear(self) -> int:
        removed = self.store.delete_pattern(f"{KEY_PREFIX}*")
        removed += self.store.delete_pattern(f"{TAG_PREFIX}*")
        return removed
