"""
Key/value cache backends used in front of the submission store.

Backends only deal in strings and surface every backend failure as
``CacheError``. Whether a failure matters is decided by the caller: the
submission store treats the cache as fail-open.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from cvtailor.errors import CacheError
from cvtailor.settings import Settings


class CacheBackend:
    backend_name = "base"

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str, *, ttl_s: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ping(self) -> None:
        raise NotImplementedError

    def purge_expired(self) -> int:
        return 0


class NullCacheBackend(CacheBackend):
    """Cache disabled: every read misses, writes are dropped."""

    backend_name = "none"

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, *, ttl_s: int) -> None:
        return None

    def delete(self, key: str) -> None:
        return None

    def ping(self) -> None:
        return None


class InMemoryCacheBackend(CacheBackend):
    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, max_entries: int = 10_000) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: str, value: str, *, ttl_s: int) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self.purge_expired()
                if len(self._entries) >= self._max_entries:
                    # drop the entry closest to expiry
                    oldest = min(self._entries, key=lambda k: self._entries[k][1])
                    self._entries.pop(oldest, None)
            self._entries[key] = (value, self._clock() + max(1, int(ttl_s)))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def ping(self) -> None:
        return None

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for CACHE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisCacheBackend(CacheBackend):
    backend_name = "redis"

    def __init__(
        self,
        *,
        host: str,
        port: int = 6379,
        password: str = "",
        db: int = 0,
        socket_timeout_ms: int = 500,
        client: Any | None = None,
    ) -> None:
        self._redis = _import_redis()
        if client is not None:
            self._client = client
        else:
            timeout_s = max(1, int(socket_timeout_ms)) / 1000.0
            self._client = self._redis.Redis(
                host=host,
                port=int(port),
                password=password or None,
                db=int(db),
                socket_timeout=timeout_s,
                socket_connect_timeout=timeout_s,
                decode_responses=True,
            )

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except self._redis.RedisError as exc:
            raise CacheError(f"redis {op} failed: {type(exc).__name__}") from exc

    def get(self, key: str) -> str | None:
        raw = self._call("get", lambda: self._client.get(key))
        if raw is None:
            return None
        return raw if isinstance(raw, str) else str(raw)

    def set(self, key: str, value: str, *, ttl_s: int) -> None:
        self._call("setex", lambda: self._client.setex(key, max(1, int(ttl_s)), value))

    def delete(self, key: str) -> None:
        self._call("delete", lambda: self._client.delete(key))

    def ping(self) -> None:
        ok = self._call("ping", self._client.ping)
        if not ok:
            raise CacheError("redis ping returned a falsy reply")


def create_cache_backend(settings: Settings) -> CacheBackend:
    backend = settings.cache_backend
    if backend == "memory":
        return InMemoryCacheBackend()
    if backend == "none":
        return NullCacheBackend()
    if backend == "redis":
        return RedisCacheBackend(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
            socket_timeout_ms=settings.cache_socket_timeout_ms,
        )
    raise RuntimeError(f"unsupported cache backend: {backend}")
