"""Disk-backed key-value store: the single-replica terminal tier.

Entries live in memory and are written to one JSON file. Writes are
debounced: each mutation pushes the flush back by ``flush_delay`` seconds,
so a burst of changes costs one write and a crash loses at most about one
debounce interval. ``close()`` flushes whatever is pending.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path

from slack_gateway.fileutil import read_json, write_json
from slack_gateway.store.memory import CacheEntry, MemoryKeyValueStore

logger = logging.getLogger(__name__)


class DiskKeyValueStore(MemoryKeyValueStore):
    """``MemoryKeyValueStore`` persisted to *path* with debounced writes."""

    def __init__(
        self,
        path: Path,
        flush_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(clock)
        self._path = path
        self._flush_delay = flush_delay
        self._flush_handle: asyncio.TimerHandle | None = None
        self._dirty = False
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _load(self) -> None:
        try:
            data = read_json(self._path, default={})
        except (ValueError, OSError):
            logger.warning(
                "Failed to load %s, starting empty", self._path, exc_info=True
            )
            return
        now = self._clock()
        for key, raw in data.items():
            entry = CacheEntry(raw.get("value"), raw.get("expires_at"))
            if not entry.expired(now):
                self._entries[key] = entry
        logger.info("Loaded %d entries from %s", len(self._entries), self._path)

    def _changed(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self._flush_delay, self.flush)

    def flush(self) -> None:
        """Write pending changes now."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._dirty:
            return
        data = {
            key: {"value": entry.value, "expires_at": entry.expires_at}
            for key, entry in self._entries.items()
        }
        try:
            write_json(self._path, data)
        except (OSError, TypeError):
            logger.warning("Failed to persist %s", self._path, exc_info=True)
            return
        self._dirty = False

    async def close(self) -> None:
        await super().close()
        self.flush()
