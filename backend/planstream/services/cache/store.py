"""Plan cache backends.

Values are stored as JSON text. Reads hand back whatever the backend holds
(str, bytes or None); ``parse_stored_value`` turns that into Python data.
Cache problems never fail a run: ``cache_get``/``cache_set`` log and carry on.
"""

import json
import threading
import time
from typing import Any, Callable, Optional, Protocol

from redis import Redis

from planstream.logging import get_logger

logger = get_logger(__name__)


class CacheStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl_s: int) -> None: ...


class RedisCacheStore:
    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(Redis.from_url(url, socket_timeout=5, socket_connect_timeout=5))

    def get(self, key: str) -> Any:
        return self._client.get(key)

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        self._client.set(key, json.dumps(value), ex=ttl_s)


class InMemoryCacheStore:
    """Process-local store with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return raw

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl_s, json.dumps(value))

    def put_raw(self, key: str, raw: Any, ttl_s: int = 3600) -> None:
        """Store an already-serialized value as-is (seeding legacy shapes)."""
        with self._lock:
            self._data[key] = (self._clock() + ttl_s, raw)


class NullCacheStore:
    def get(self, key: str) -> Any:
        return None

    def set(self, key: str, value: Any, ttl_s: int) -> None:
        return None


def build_cache_store(redis_url: str) -> CacheStore:
    if not redis_url:
        logger.info("cache.disabled reason=no_redis_url")
        return NullCacheStore()
    return RedisCacheStore.from_url(redis_url)


def parse_stored_value(raw: Any) -> Any:
    """Decode a stored value. Undecodable text reads as a miss (None)."""
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None
    return raw


def cache_get(store: CacheStore, key: str, log: Any = logger) -> Any:
    try:
        return parse_stored_value(store.get(key))
    except Exception as exc:  # noqa: BLE001 - cache is best-effort
        log.warning("cache.get_failed key=%s error=%s", key, exc)
        return None


def cache_set(store: CacheStore, key: str, value: Any, ttl_s: int, log: Any = logger) -> bool:
    try:
        store.set(key, value, ttl_s)
        return True
    except Exception as exc:  # noqa: BLE001 - cache is best-effort
        log.warning("cache.set_failed key=%s error=%s", key, exc)
        return False
