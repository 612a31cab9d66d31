"""Store protocols shared by every backend."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from slack_gateway.models import TenantConfig


class StoreError(RuntimeError):
    """Raised when no storage tier could complete an operation."""


@runtime_checkable
class KeyValueStore(Protocol):
    """JSON-value key-value store with optional per-key TTL.

    A read past expiry behaves exactly like a miss.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, pattern: str = "*") -> list[str]: ...

    async def size(self) -> int: ...

    async def close(self) -> None: ...


@runtime_checkable
class TenantStore(Protocol):
    """One persistence tier for tenant configuration."""

    name: str

    async def save(self, config: TenantConfig) -> None: ...

    async def load(self, tenant_id: str) -> TenantConfig | None: ...

    async def load_by_key(self, team_id: str) -> TenantConfig | None:
        """Find a tenant by its resolved workspace (team) id."""
        ...

    async def delete(self, tenant_id: str) -> None: ...

    async def count(self) -> int: ...

    async def close(self) -> None: ...
