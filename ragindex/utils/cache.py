"""
Cache store
-----------
Best-effort key/value cache used by the embedding batcher and the search
engine.  A cache is never a correctness dependency: every backend error is
logged and reported to the caller as a miss, so Redis being down only costs
latency.

Backends:
  RedisCache   shared across workers (redis-py)
  MemoryCache  per-process dict with TTL, for single-node dev and tests
  NullCache    always miss
"""
from __future__ import annotations

import threading
import time
from typing import Optional, Protocol

import redis
from loguru import logger


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def get_many(self, keys: list[str]) -> list[Optional[bytes]]: ...

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    def set_many(self, items: dict[str, bytes], ttl_seconds: int) -> None: ...

    def incr(self, key: str) -> int: ...

    def close(self) -> None: ...


class RedisCache:
    """Redis-backed cache. All failures degrade to a miss."""

    def __init__(
        self,
        url: str,
        key_prefix: str = "ragindex:",
        socket_timeout: float = 2.0,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.key_prefix = key_prefix
        self._client = client or redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=False,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(self._key(key))
        except (redis.RedisError, OSError) as exc:
            logger.warning(f"[Cache] GET failed, treating as miss: {exc}")
            return None

    def get_many(self, keys: list[str]) -> list[Optional[bytes]]:
        if not keys:
            return []
        try:
            return list(self._client.mget([self._key(k) for k in keys]))
        except (redis.RedisError, OSError) as exc:
            logger.warning(f"[Cache] MGET of {len(keys)} keys failed, treating as miss: {exc}")
            return [None] * len(keys)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            self._client.set(self._key(key), value, ex=ttl_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.warning(f"[Cache] SET failed, skipping: {exc}")

    def set_many(self, items: dict[str, bytes], ttl_seconds: int) -> None:
        if not items:
            return
        try:
            pipe = self._client.pipeline(transaction=False)
            for key, value in items.items():
                pipe.set(self._key(key), value, ex=ttl_seconds)
            pipe.execute()
        except (redis.RedisError, OSError) as exc:
            logger.warning(f"[Cache] pipelined SET of {len(items)} keys failed, skipping: {exc}")

    def incr(self, key: str) -> int:
        try:
            return int(self._client.incr(self._key(key)))
        except (redis.RedisError, OSError) as exc:
            logger.warning(f"[Cache] INCR failed: {exc}")
            return 0

    def close(self) -> None:
        try:
            self._client.close()
        except (redis.RedisError, OSError) as exc:
            logger.debug(f"[Cache] close failed: {exc}")


class MemoryCache:
    """Thread-safe in-process cache with per-key expiry."""

    def __init__(self, clock=time.monotonic) -> None:
        self._data: dict[str, tuple[bytes, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires = entry
            if expires is not None and expires <= self._clock():
                del self._data[key]
                return None
            return value

    def get_many(self, keys: list[str]) -> list[Optional[bytes]]:
        return [self.get(k) for k in keys]

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        expires = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        with self._lock:
            self._data[key] = (value, expires)

    def set_many(self, items: dict[str, bytes], ttl_seconds: int) -> None:
        for key, value in items.items():
            self.set(key, value, ttl_seconds)

    def incr(self, key: str) -> int:
        with self._lock:
            current = int(self._data.get(key, (b"0", None))[0])
            current += 1
            self._data[key] = (str(current).encode(), None)
            return current

    def __len__(self) -> int:
        return len(self._data)

    def close(self) -> None:
        with self._lock:
            self._data.clear()


class NullCache:
    def get(self, key: str) -> Optional[bytes]:
        return None

    def get_many(self, keys: list[str]) -> list[Optional[bytes]]:
        return [None] * len(keys)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        return None

    def set_many(self, items: dict[str, bytes], ttl_seconds: int) -> None:
        return None

    def incr(self, key: str) -> int:
        return 0

    def close(self) -> None:
        return None
