"""Tenant store on top of any ``KeyValueStore``.

Records live under ``tenant:{id}``; a secondary ``tenant-by-team:{team}``
entry points at the tenant id so lookups by workspace are one extra read.
"""

from __future__ import annotations

import logging

from slack_gateway import conventions
from slack_gateway.models import TenantConfig
from slack_gateway.store.base import KeyValueStore

logger = logging.getLogger(__name__)


class KeyValueTenantStore:
    """``TenantStore`` over a key-value backend (Redis or disk)."""

    def __init__(self, kv: KeyValueStore, name: str) -> None:
        self._kv = kv
        self.name = name

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"{conventions.TENANT_KEY_PREFIX}{tenant_id}"

    @staticmethod
    def _index_key(team_id: str) -> str:
        return f"{conventions.TENANT_INDEX_PREFIX}{team_id}"

    async def save(self, config: TenantConfig) -> None:
        previous = await self._kv.get(self._key(config.tenant_id))
        await self._kv.set(self._key(config.tenant_id), config.to_dict())
        old_team = previous.get("workspace_id") if previous else None
        if old_team and old_team != config.workspace_id:
            await self._kv.delete(self._index_key(old_team))
        if config.workspace_id:
            await self._kv.set(self._index_key(config.workspace_id), config.tenant_id)

    async def load(self, tenant_id: str) -> TenantConfig | None:
        data = await self._kv.get(self._key(tenant_id))
        return TenantConfig.from_dict(data) if data else None

    async def load_by_key(self, team_id: str) -> TenantConfig | None:
        tenant_id = await self._kv.get(self._index_key(team_id))
        if not tenant_id:
            return None
        return await self.load(tenant_id)

    async def delete(self, tenant_id: str) -> None:
        data = await self._kv.get(self._key(tenant_id))
        await self._kv.delete(self._key(tenant_id))
        if data and data.get("workspace_id"):
            await self._kv.delete(self._index_key(data["workspace_id"]))

    async def count(self) -> int:
        return len(await self._kv.keys(f"{conventions.TENANT_KEY_PREFIX}*"))

    async def close(self) -> None:
        await self._kv.close()
