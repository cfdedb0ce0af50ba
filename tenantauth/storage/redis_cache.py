from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from tenantauth.logging import get_logger

logger = get_logger(__name__)


class EphemeralStore(Protocol):
    """TTL-keyed store for short-lived auth state.

    Values are JSON-serialisable. ``pop`` is an atomic get-and-delete. Maps
    are small per-owner collections (``name`` -> ``field`` -> value) where
    each field carries its own TTL.
    """

    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def pop(self, key: str) -> Any: ...
    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int: ...
    async def map_set(self, name: str, field: str, value: Any, ttl_seconds: int) -> None: ...
    async def map_get(self, name: str, field: str) -> Any: ...
    async def map_delete(self, name: str, field: str) -> bool: ...
    async def map_items(self, name: str) -> Dict[str, Any]: ...
    async def map_clear(self, name: str) -> int: ...
    async def close(self) -> None: ...


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("ephemeral_value_corrupt")
        return None


class RedisCache:
    """Redis-backed ephemeral store.

    Map entries are stored as ``<name>:<field>`` keys with their own expiry,
    plus a ``<name>:index`` set for enumeration. Writes that touch both go
    through a MULTI/EXEC pipeline.
    """

    _INCR_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if value == 1 and ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return value
"""

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client=None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _entry_key(name: str, field: str) -> str:
        return f"{name}:{field}"

    @staticmethod
    def _index_key(name: str) -> str:
        return f"{name}:index"

    async def get(self, key: str) -> Any:
        return _decode(await self.client.get(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ex = max(1, int(ttl_seconds)) if ttl_seconds else None
        await self.client.set(key, _encode(value), ex=ex)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def pop(self, key: str) -> Any:
        """Atomically read and delete ``key``.

        Uses GETDEL (Redis 6.2+); falls back to a Lua script on servers that
        do not know the command.
        """
        try:
            raw = await self.client.getdel(key)
        except (AttributeError, ResponseError):
            raw = await self.client.eval(self._GETDEL_SCRIPT, 1, key)
        return _decode(raw)

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        result = await self.client.eval(self._INCR_SCRIPT, 1, key, int(ttl_seconds or 0))
        return int(result)

    async def map_set(self, name: str, field: str, value: Any, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        index_key = self._index_key(name)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._entry_key(name, field), _encode(value), ex=ttl)
            pipe.sadd(index_key, field)
            pipe.expire(index_key, ttl)
            await pipe.execute()

    async def map_get(self, name: str, field: str) -> Any:
        return _decode(await self.client.get(self._entry_key(name, field)))

    async def map_delete(self, name: str, field: str) -> bool:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self._entry_key(name, field))
            pipe.srem(self._index_key(name), field)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def map_items(self, name: str) -> Dict[str, Any]:
        index_key = self._index_key(name)
        fields = sorted(await self.client.smembers(index_key))
        if not fields:
            return {}
        raws = await self.client.mget([self._entry_key(name, f) for f in fields])
        items: Dict[str, Any] = {}
        stale: List[str] = []
        for field, raw in zip(fields, raws):
            if raw is None:
                stale.append(field)
                continue
            value = _decode(raw)
            if value is not None:
                items[field] = value
        if stale:
            await self.client.srem(index_key, *stale)
        return items

    async def map_clear(self, name: str) -> int:
        index_key = self._index_key(name)
        fields = await self.client.smembers(index_key)
        keys = [self._entry_key(name, f) for f in fields]
        async with self.client.pipeline(transaction=True) as pipe:
            if keys:
                pipe.delete(*keys)
            pipe.delete(index_key)
            results = await pipe.execute()
        return int(results[0]) if keys else 0

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()


class MemoryCache:
    """In-process ephemeral store with the same contract as ``RedisCache``.

    Expiry is lazy: stale entries are dropped when read. ``clock`` returns
    epoch seconds and can be replaced in tests.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._data: Dict[str, tuple[str, Optional[float]]] = {}
        self._maps: Dict[str, Dict[str, tuple[str, float]]] = {}
        self._lock = threading.Lock()

    def _deadline(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self.clock() + ttl_seconds if ttl_seconds else None

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, deadline = entry
        if deadline is not None and deadline <= self.clock():
            self._data.pop(key, None)
            return None
        return raw

    async def get(self, key: str) -> Any:
        with self._lock:
            return _decode(self._live(key))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (_encode(value), self._deadline(ttl_seconds))

    async def delete(self, key: str) -> bool:
        with self._lock:
            present = self._live(key) is not None
            self._data.pop(key, None)
            return present

    async def pop(self, key: str) -> Any:
        with self._lock:
            raw = self._live(key)
            self._data.pop(key, None)
            return _decode(raw)

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            raw = self._live(key)
            if raw is None:
                value, deadline = 1, self._deadline(ttl_seconds)
            else:
                value, deadline = int(json.loads(raw)) + 1, self._data[key][1]
            self._data[key] = (_encode(value), deadline)
            return value

    def _live_map(self, name: str) -> Dict[str, tuple[str, float]]:
        entries = self._maps.get(name, {})
        now = self.clock()
        for field in [f for f, (_, deadline) in entries.items() if deadline <= now]:
            entries.pop(field, None)
        return entries

    async def map_set(self, name: str, field: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._maps.setdefault(name, {})[field] = (
                _encode(value),
                self.clock() + ttl_seconds,
            )

    async def map_get(self, name: str, field: str) -> Any:
        with self._lock:
            entry = self._live_map(name).get(field)
            return _decode(entry[0]) if entry else None

    async def map_delete(self, name: str, field: str) -> bool:
        with self._lock:
            return self._live_map(name).pop(field, None) is not None

    async def map_items(self, name: str) -> Dict[str, Any]:
        with self._lock:
            return {f: _decode(raw) for f, (raw, _) in sorted(self._live_map(name).items())}

    async def map_clear(self, name: str) -> int:
        with self._lock:
            removed = len(self._live_map(name))
            self._maps.pop(name, None)
            return removed

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
            self._maps.clear()


__all__ = ["EphemeralStore", "MemoryCache", "RedisCache"]
