"""In-process key-value store with lazy and periodic expiry."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import fnmatch
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float | None = None  # absolute unix time, None = never

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryKeyValueStore:
    """Dict-backed ``KeyValueStore``.

    Expired entries are evicted when read (lazy expiry) and by ``sweep()``,
    which ``start_sweeper()`` runs on an interval (active expiry). Values
    are deep-copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock
        self._sweeper: asyncio.Task[None] | None = None

    def _live(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            self._changed()
            return None
        return entry

    def _changed(self) -> None:
        """Hook for subclasses that persist mutations."""

    async def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return None if entry is None else copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._entries[key] = CacheEntry(copy.deepcopy(value), expires_at)
        self._changed()

    async def delete(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._changed()

    async def keys(self, pattern: str = "*") -> list[str]:
        return [
            key
            for key in list(self._entries)
            if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
        ]

    async def size(self) -> int:
        self.sweep()
        return len(self._entries)

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number evicted."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._changed()
            logger.debug("Swept %d expired entries", len(expired))
        return len(expired)

    def start_sweeper(self, interval: float) -> None:
        """Run ``sweep()`` every *interval* seconds until ``close()``."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.ensure_future(self._sweep_loop(interval))

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
