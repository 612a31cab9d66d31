"""Composite stores that try each tier in priority order.

Typical tenant chain: database (durable, shared) -> Redis (shared, fast) -> disk
(local, always available). Writes land on the first tier that accepts
them; a failing tier is logged and skipped so configuration delivery
never blocks on one backend being down. Reads return the first hit and
do not backfill lower tiers. Thread contexts use the same policy over
Redis -> disk.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import redis.exceptions
from sqlalchemy.exc import SQLAlchemyError

from slack_gateway.models import TenantConfig
from slack_gateway.store.base import KeyValueStore, StoreError, TenantStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that mean "this tier is unavailable right now", not a programming bug.
TIER_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    ValueError,
    redis.exceptions.RedisError,
    SQLAlchemyError,
)

# Tier errors plus "every tier failed" from a composite.
STORE_ERRORS: tuple[type[BaseException], ...] = (StoreError, *TIER_ERRORS)


class TieredTenantStore:
    """``TenantStore`` composite over an ordered list of tiers.

    Args:
        tiers: Tiers in priority order. At least one is required.
        shared_tiers: Names of tiers whose ``count()`` is authoritative
            across replicas, used to seed the tenant counter.
    """

    name = "tiered"

    def __init__(
        self,
        tiers: Sequence[TenantStore],
        shared_tiers: Sequence[str] = ("database", "redis"),
    ) -> None:
        if not tiers:
            raise ValueError("TieredTenantStore needs at least one tier")
        self._tiers = list(tiers)
        self._shared = set(shared_tiers)
        self._count = 0
        self.last_write_tier: str | None = None

    @property
    def tiers(self) -> list[TenantStore]:
        return list(self._tiers)

    @property
    def tier_names(self) -> list[str]:
        return [tier.name for tier in self._tiers]

    @property
    def cached_count(self) -> int:
        """In-process tenant count for health reporting."""
        return self._count

    async def initialize(self) -> int:
        """Seed the tenant counter from the first shared tier that answers.

        Falls back to zero when only local tiers are available; the counter
        then grows as tenants are saved on this replica.
        """
        for tier in self._tiers:
            if tier.name not in self._shared:
                continue
            try:
                self._count = await tier.count()
            except TIER_ERRORS:
                logger.warning(
                    "Tier %s could not count tenants", tier.name, exc_info=True
                )
                continue
            logger.info("Tenant count %d (from %s)", self._count, tier.name)
            return self._count
        self._count = 0
        return self._count

    async def _first(
        self, op: str, call: Callable[[TenantStore], Awaitable[T]]
    ) -> tuple[TenantStore, T]:
        errors: list[str] = []
        for tier in self._tiers:
            try:
                return tier, await call(tier)
            except TIER_ERRORS as exc:
                logger.warning(
                    "Tenant %s failed on tier %s", op, tier.name, exc_info=True
                )
                errors.append(f"{tier.name}: {exc}")
        raise StoreError(f"Tenant {op} failed on every tier ({'; '.join(errors)})")

    async def save(self, config: TenantConfig) -> bool:
        """Persist *config* on the first tier that accepts it.

        Returns:
            True if the tenant was not previously known to that tier.
        """

        async def _save(tier: TenantStore) -> bool:
            existed = await tier.load(config.tenant_id) is not None
            await tier.save(config)
            return not existed

        tier, created = await self._first("save", _save)
        self.last_write_tier = tier.name
        if created:
            self._count += 1
        logger.info("Saved tenant %s to %s tier", config.tenant_id, tier.name)
        return created

    async def load(self, tenant_id: str) -> TenantConfig | None:
        config, _ = await self.locate(tenant_id)
        return config

    async def locate(self, tenant_id: str) -> tuple[TenantConfig | None, str | None]:
        """Load *tenant_id* and report which tier answered."""
        failures = 0
        for tier in self._tiers:
            try:
                config = await tier.load(tenant_id)
            except TIER_ERRORS:
                failures += 1
                logger.warning(
                    "Tenant load failed on tier %s", tier.name, exc_info=True
                )
                continue
            if config is not None:
                return config, tier.name
        if failures == len(self._tiers):
            raise StoreError(f"Tenant load failed on every tier for {tenant_id}")
        return None, None

    async def load_by_key(self, team_id: str) -> TenantConfig | None:
        for tier in self._tiers:
            try:
                config = await tier.load_by_key(team_id)
            except TIER_ERRORS:
                logger.warning(
                    "Team lookup failed on tier %s", tier.name, exc_info=True
                )
                continue
            if config is not None:
                return config
        return None

    async def delete(self, tenant_id: str) -> None:
        """Remove the tenant from every tier so no stale copy resurfaces."""
        removed = False
        failures = 0
        for tier in self._tiers:
            try:
                if await tier.load(tenant_id) is not None:
                    removed = True
                await tier.delete(tenant_id)
            except TIER_ERRORS:
                failures += 1
                logger.warning(
                    "Tenant delete failed on tier %s", tier.name, exc_info=True
                )
        if failures == len(self._tiers):
            raise StoreError(f"Tenant delete failed on every tier for {tenant_id}")
        if removed and self._count > 0:
            self._count -= 1

    async def count(self) -> int:
        _, total = await self._first("count", lambda tier: tier.count())
        return total

    async def close(self) -> None:
        for tier in self._tiers:
            try:
                await tier.close()
            except TIER_ERRORS:
                logger.warning("Error closing tier %s", tier.name, exc_info=True)


class TieredKeyValueStore:
    """``KeyValueStore`` composite for thread contexts.

    Same policy as ``TieredTenantStore``: writes go to the first tier
    that accepts them, reads return the first hit, deletes reach every
    tier. ``StoreError`` is raised only when no tier answers.
    """

    def __init__(self, tiers: Sequence[tuple[str, KeyValueStore]]) -> None:
        if not tiers:
            raise ValueError("TieredKeyValueStore needs at least one tier")
        self._tiers = list(tiers)

    @property
    def tiers(self) -> list[KeyValueStore]:
        return [tier for _, tier in self._tiers]

    @property
    def tier_names(self) -> list[str]:
        return [name for name, _ in self._tiers]

    async def get(self, key: str) -> Any | None:
        failures = 0
        for name, tier in self._tiers:
            try:
                value = await tier.get(key)
            except TIER_ERRORS:
                failures += 1
                logger.warning("Read of %s failed on tier %s", key, name, exc_info=True)
                continue
            if value is not None:
                return value
        if failures == len(self._tiers):
            raise StoreError(f"Read of {key} failed on every tier")
        return None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        errors: list[str] = []
        for name, tier in self._tiers:
            try:
                await tier.set(key, value, ttl)
            except TIER_ERRORS as exc:
                logger.warning(
                    "Write of %s failed on tier %s", key, name, exc_info=True
                )
                errors.append(f"{name}: {exc}")
                continue
            return
        raise StoreError(f"Write of {key} failed on every tier ({'; '.join(errors)})")

    async def delete(self, key: str) -> None:
        failures = 0
        for name, tier in self._tiers:
            try:
                await tier.delete(key)
            except TIER_ERRORS:
                failures += 1
                logger.warning(
                    "Delete of %s failed on tier %s", key, name, exc_info=True
                )
        if failures == len(self._tiers):
            raise StoreError(f"Delete of {key} failed on every tier")

    async def keys(self, pattern: str = "*") -> list[str]:
        found: dict[str, None] = {}
        failures = 0
        for name, tier in self._tiers:
            try:
                found.update(dict.fromkeys(await tier.keys(pattern)))
            except TIER_ERRORS:
                failures += 1
                logger.warning("Key scan failed on tier %s", name, exc_info=True)
        if failures == len(self._tiers):
            raise StoreError("Key scan failed on every tier")
        return list(found)

    async def size(self) -> int:
        return len(await self.keys())

    async def close(self) -> None:
        for name, tier in self._tiers:
            try:
                await tier.close()
            except TIER_ERRORS:
                logger.warning("Error closing tier %s", name, exc_info=True)
