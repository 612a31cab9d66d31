"""Redis-backed key-value store: the shared tier.

Every replica pointed at the same Redis sees the same keys. Values are
JSON-encoded and all keys carry a common prefix so the gateway can share
a Redis database with other services.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

import redis.asyncio as aioredis

from slack_gateway import conventions

logger = logging.getLogger(__name__)


class RedisKeyValueStore:
    """``KeyValueStore`` over a ``redis.asyncio.Redis`` client.

    Connection and command errors (``redis.exceptions.RedisError``) are not
    caught here; the tiered store decides whether to fall through.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = conventions.REDIS_KEY_PREFIX,
    ) -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(
        cls, url: str, prefix: str = conventions.REDIS_KEY_PREFIX
    ) -> RedisKeyValueStore:
        return cls(aioredis.from_url(url, decode_responses=True), prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        payload = json.dumps(value)
        if ttl is not None:
            await self._client.set(self._key(key), payload, ex=max(1, math.ceil(ttl)))
        else:
            await self._client.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def keys(self, pattern: str = "*") -> list[str]:
        start = len(self._prefix)
        return [
            key[start:]
            async for key in self._client.scan_iter(match=self._key(pattern))
        ]

    async def size(self) -> int:
        return len(await self.keys())

    async def close(self) -> None:
        await self._client.aclose()
