import fnmatch
import json
import logging
import os
import threading
import time
from typing import Any, Callable, Optional

from .config import get_config

# Redis backend selection via USE_REDIS_CACHE=1 and REDIS_URL (or REDIS_HOST/PORT/PASSWORD).
# Every public function here is fail-open: backend errors are logged and turned
# into a miss or a no-op, never raised.

logger = logging.getLogger(__name__)

_config = get_config()
DEFAULT_TTL = _config.CACHE_TTL_DEFAULT


class _MemoryBackend:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._cache: dict[str, tuple[float, str]] = {}
        self._hashes: dict[str, dict[str, str]] = {}

    def _now(self) -> float:
        return time.time()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._cache.get(key)
            if not item:
                return None
            expires_at, payload = item
            if expires_at < self._now():
                self._cache.pop(key, None)
                _bump("expired")
                return None
            return payload

    def setex(self, key: str, ttl_seconds: int, payload: str) -> None:
        with self._lock:
            self._cache[key] = (self._now() + ttl_seconds, payload)

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)
            self._hashes.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in list(self._cache) + list(self._hashes) if fnmatch.fnmatchcase(k, pattern)]
            for k in keys:
                self._cache.pop(k, None)
                self._hashes.pop(k, None)
            return len(keys)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None or key in self._hashes

    def hset(self, key: str, field: str, payload: str) -> None:
        with self._lock:
            self._hashes.setdefault(key, {})[field] = payload

    def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            return self._hashes.get(key, {}).get(field)

    def hgetall(self, key: str) -> dict[str, str]:
        with self._lock:
            return dict(self._hashes.get(key, {}))

    def hdel(self, key: str, field: str) -> None:
        with self._lock:
            fields = self._hashes.get(key)
            if fields is None:
                return
            fields.pop(field, None)
            if not fields:
                self._hashes.pop(key, None)


class _RedisBackend:
    def __init__(self, url: str) -> None:
        import redis

        # decode_responses=True gives str for values; payloads are JSON text
        self._client = redis.Redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def setex(self, key: str, ttl_seconds: int, payload: str) -> None:
        self._client.setex(key, ttl_seconds, payload)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def delete_pattern(self, pattern: str) -> int:
        pipe = self._client.pipeline(transaction=False)
        count = 0
        # scan_iter instead of KEYS to avoid blocking the server
        for k in self._client.scan_iter(match=pattern):
            pipe.delete(k)
            count += 1
        if count:
            pipe.execute()
        return count

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def hset(self, key: str, field: str, payload: str) -> None:
        self._client.hset(key, field, payload)

    def hget(self, key: str, field: str) -> Optional[str]:
        return self._client.hget(key, field)

    def hgetall(self, key: str) -> dict[str, str]:
        return self._client.hgetall(key)

    def hdel(self, key: str, field: str) -> None:
        self._client.hdel(key, field)


_CACHE_ENABLED = _config.CACHE_ENABLED
_LOG_CACHE = os.getenv("LOG_CACHE") == "1"
_metrics_lock = threading.RLock()
_metrics = {"hits": 0, "misses": 0, "expired": 0, "errors": 0}
_backend: Any

if _config.USE_REDIS_CACHE:
    try:
        _backend = _RedisBackend(_config.redis_url())
    except Exception:
        logger.warning("Redis cache unavailable, falling back to in-process memory cache", exc_info=True)
        _backend = _MemoryBackend()
else:
    _backend = _MemoryBackend()


def _bump(name: str) -> None:
    with _metrics_lock:
        _metrics[name] += 1


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _decode(payload: Optional[str]) -> Optional[Any]:
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except ValueError:
        return None


def _failed(op: str, key: str, exc: Exception) -> None:
    _bump("errors")
    logger.error("cache %s failed key=%s: %s", op, key, exc)


def use_backend(backend: Any) -> Any:
    """Swap the active backend, returning the previous one."""
    global _backend
    previous = _backend
    _backend = backend
    return previous


def get_backend() -> Any:
    return _backend


def cache_get(key: str) -> Optional[Any]:
    if not _CACHE_ENABLED:
        return None
    try:
        value = _decode(_backend.get(key))
    except Exception as e:
        _failed("get", key, e)
        return None
    if value is not None:
        _bump("hits")
        if _LOG_CACHE:
            logger.info("[cache] hit key=%s", key)
    else:
        _bump("misses")
        if _LOG_CACHE:
            logger.info("[cache] miss key=%s", key)
    return value


def cache_set(key: str, value: Any, ttl_seconds: int = DEFAULT_TTL) -> None:
    if not _CACHE_ENABLED or ttl_seconds <= 0:
        return
    try:
        _backend.setex(key, ttl_seconds, _encode(value))
        if _LOG_CACHE:
            logger.info("[cache] set key=%s ttl=%s", key, ttl_seconds)
    except Exception as e:
        _failed("set", key, e)


def cache_delete(key: str) -> None:
    try:
        _backend.delete(key)
    except Exception as e:
        _failed("delete", key, e)


def cache_delete_pattern(pattern: str) -> None:
    try:
        removed = _backend.delete_pattern(pattern)
        if _LOG_CACHE:
            logger.info("[cache] invalidate pattern=%s removed=%s", pattern, removed)
    except Exception as e:
        _failed("delete_pattern", pattern, e)


def cache_exists(key: str) -> bool:
    if not _CACHE_ENABLED:
        return False
    try:
        return bool(_backend.exists(key))
    except Exception as e:
        _failed("exists", key, e)
        return False


def cache_hset(key: str, field: str, value: Any) -> None:
    if not _CACHE_ENABLED:
        return
    try:
        _backend.hset(key, field, _encode(value))
    except Exception as e:
        _failed("hset", f"{key}.{field}", e)


def cache_hget(key: str, field: str) -> Optional[Any]:
    if not _CACHE_ENABLED:
        return None
    try:
        return _decode(_backend.hget(key, field))
    except Exception as e:
        _failed("hget", f"{key}.{field}", e)
        return None


def cache_hgetall(key: str) -> dict[str, Any]:
    if not _CACHE_ENABLED:
        return {}
    try:
        raw = _backend.hgetall(key) or {}
    except Exception as e:
        _failed("hgetall", key, e)
        return {}
    return {f: _decode(v) for f, v in raw.items()}


def cache_hdel(key: str, field: str) -> None:
    try:
        _backend.hdel(key, field)
    except Exception as e:
        _failed("hdel", f"{key}.{field}", e)


def cache_memo(key: str, ttl_seconds: int, producer: Callable[[], Any]) -> Any:
    """Cache-aside read: return the cached value or produce, store and return it.

    ``producer`` errors propagate; ``None`` results are returned but not cached.
    """
    cached = cache_get(key)
    if cached is not None:
        return cached
    value = producer()
    if value is not None:
        cache_set(key, value, ttl_seconds)
    return value


def cache_metrics() -> dict[str, int]:
    with _metrics_lock:
        return dict(_metrics)
