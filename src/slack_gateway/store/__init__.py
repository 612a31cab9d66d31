"""Storage backends for tenant configuration and thread context.

Tenant configs go through a ``TieredTenantStore`` that tries, in order,
the database tier, the shared Redis tier and the local disk tier. Thread
contexts use a ``TieredKeyValueStore`` over Redis (when configured) and
the disk map.
"""

from slack_gateway.store.base import KeyValueStore, StoreError, TenantStore
from slack_gateway.store.tiered import TieredKeyValueStore, TieredTenantStore

__all__ = [
    "KeyValueStore",
    "StoreError",
    "TenantStore",
    "TieredKeyValueStore",
    "TieredTenantStore",
]
