from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis

from core.config import RedisConfig
from utils.time import Clock, utc_now


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _MemoryValue:
    value: Any
    expires_at: float | None


class MemoryCache(CacheBackend):
    """Process-local cache. Values are stored as JSON text like in Redis."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._store: dict[str, _MemoryValue] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _now(self) -> float:
        return self._clock().timestamp()

    def _is_expired(self, entry: _MemoryValue) -> bool:
        if entry.expires_at is None:
            return False
        return self._now() >= entry.expires_at

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            if self._is_expired(entry):
                self._store.pop(key, None)
                return None
            return json.loads(entry.value)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        async with self._lock:
            expires_at = self._now() + ttl if ttl else None
            self._store[key] = _MemoryValue(value=json.dumps(value, ensure_ascii=False), expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def close(self) -> None:
        self._store.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Any:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        if ttl:
            await self._client.set(key, payload, ex=ttl)
        else:
            await self._client.set(key, payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig, clock: Clock = utc_now) -> CacheBackend:
    if config.enabled:
        return RedisCache(config.url)
    return MemoryCache(clock=clock)
