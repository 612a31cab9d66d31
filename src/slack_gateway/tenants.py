"""Tenant registry: config-push handling on top of the tiered store.

The registry owns:
- Read-modify-write merging of configuration updates
- The one-time exchange of a short-lived bootstrap token for a
  persistent API token
- Lazy resolution of the bot's own user id and workspace id

The tiered store owns where records live; the registry never talks to a
single tier directly.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any, Protocol

import httpx

from slack_gateway.client import SlackAPIError, SlackClientFactory
from slack_gateway.models import TenantConfig, utc_now_iso
from slack_gateway.store import StoreError, TieredTenantStore

logger = logging.getLogger(__name__)


class TokenExchangeError(RuntimeError):
    """The upstream API did not issue a persistent token."""


class TokenExchanger(Protocol):
    """Turns a tenant's bootstrap token into a long-lived API token."""

    async def exchange(self, tenant: TenantConfig) -> str: ...


class HttpTokenExchanger:
    """Issue a persistent key through the upstream ``API_KEY_CREATE`` tool.

    The call is a JSON-RPC ``tools/call`` against ``{api_base_url}/mcp/self``
    authenticated with the bootstrap token.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._clock = clock

    def _request_body(self, tenant: TenantConfig) -> dict[str, Any]:
        millis = int(self._clock() * 1000)
        return {
            "jsonrpc": "2.0",
            "id": millis,
            "method": "tools/call",
            "params": {
                "name": "API_KEY_CREATE",
                "arguments": {
                    "name": f"mcp-{tenant.tenant_id}-{millis}",
                    "permissions": {"self": ["*"], tenant.tenant_id: ["*"]},
                    "metadata": {
                        "purpose": "mcp-persistent",
                        "connectionId": tenant.tenant_id,
                        "createdAt": utc_now_iso(),
                    },
                },
            },
        }

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, **kwargs)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.post(url, **kwargs)

    async def exchange(self, tenant: TenantConfig) -> str:
        url = f"{tenant.api_base_url.rstrip('/')}/mcp/self"
        try:
            response = await self._post(
                url,
                json=self._request_body(tenant),
                headers={
                    "Authorization": f"Bearer {tenant.bootstrap_token}",
                    "Accept": "application/json, text/event-stream",
                },
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TokenExchangeError(f"API_KEY_CREATE request failed: {exc}") from exc
        return extract_api_key(payload)


def extract_api_key(payload: Mapping[str, Any]) -> str:
    """Pull the issued key out of a JSON-RPC tool result."""
    if payload.get("error"):
        raise TokenExchangeError(f"API_KEY_CREATE error: {payload['error']}")
    result = payload.get("result") or {}
    structured = result.get("structuredContent") or {}
    if structured.get("key"):
        return str(structured["key"])
    for part in result.get("content") or []:
        if part.get("type") != "text":
            continue
        try:
            parsed = json.loads(part.get("text", ""))
        except ValueError:
            continue
        if isinstance(parsed, dict) and parsed.get("key"):
            return str(parsed["key"])
    raise TokenExchangeError("API_KEY_CREATE returned no key")


class TenantRegistry:
    """Applies configuration pushes and resolves tenant identity.

    Args:
        store: The tiered tenant store.
        client_factory: Builds a Slack client for a tenant (for ``auth.test``).
        exchanger: Token exchanger; None disables the exchange.
        default_streaming: Streaming flag for tenants that do not set one.
    """

    def __init__(
        self,
        store: TieredTenantStore,
        client_factory: SlackClientFactory,
        exchanger: TokenExchanger | None = None,
        default_streaming: bool = True,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._exchanger = exchanger
        self._default_streaming = default_streaming
        self._bot_ids: dict[str, str] = {}

    @property
    def store(self) -> TieredTenantStore:
        return self._store

    async def load(self, tenant_id: str) -> TenantConfig | None:
        return await self._store.load(tenant_id)

    async def load_by_team(self, team_id: str) -> TenantConfig | None:
        return await self._store.load_by_key(team_id)

    async def delete(self, tenant_id: str) -> None:
        await self._store.delete(tenant_id)
        self._bot_ids.pop(tenant_id, None)

    async def apply(self, tenant_id: str, update: Mapping[str, Any]) -> TenantConfig:
        """Merge a configuration push into the stored record and save it.

        Only fields present (and not None) in *update* change. Raises
        ``TenantConfigError`` if the result lacks a bot token or signing
        secret, and ``StoreError`` if no tier accepted the write.
        """
        existing = await self._store.load(tenant_id)
        now = utc_now_iso()
        if existing is None:
            behavior = {"streaming": self._default_streaming}
            behavior.update(update.get("behavior") or {})
            fields = {k: v for k, v in update.items() if v is not None}
            config = TenantConfig.from_dict(
                {
                    **fields,
                    "tenant_id": tenant_id,
                    "behavior": behavior,
                    "configured_at": now,
                    "updated_at": now,
                }
            )
        else:
            config = existing.merged({**update, "updated_at": now})
            if update.get("bot_token") and update["bot_token"] != existing.bot_token:
                # New credentials may belong to a different bot or workspace
                config = replace(config, bot_user_id=None, workspace_id=None)
                self._bot_ids.pop(tenant_id, None)

        config = await self._exchange_token(config)
        created = await self._store.save(config)
        logger.info(
            "%s tenant %s", "Configured" if created else "Updated", tenant_id
        )
        return config

    async def _exchange_token(self, config: TenantConfig) -> TenantConfig:
        if config.api_token:
            logger.debug("Tenant %s already has a persistent token", config.tenant_id)
            return config
        if self._exchanger is None or not config.bootstrap_token:
            return config
        if not config.api_base_url:
            return config
        try:
            token = await self._exchanger.exchange(config)
        except TokenExchangeError:
            logger.warning(
                "Token exchange failed for tenant %s; keeping bootstrap token",
                config.tenant_id,
                exc_info=True,
            )
            return config
        logger.info("Issued persistent API token for tenant %s", config.tenant_id)
        return replace(config, api_token=token, bootstrap_token="")

    def known_bot_user_id(self, tenant: TenantConfig) -> str | None:
        return tenant.bot_user_id or self._bot_ids.get(tenant.tenant_id)

    async def ensure_identity(self, tenant: TenantConfig) -> TenantConfig:
        """Fill in ``bot_user_id``/``workspace_id`` via ``auth.test`` if missing.

        The result is cached per tenant and persisted. Failure leaves the
        tenant unchanged; the next event tries again.
        """
        if tenant.bot_user_id:
            self._bot_ids[tenant.tenant_id] = tenant.bot_user_id
            return tenant
        cached = self._bot_ids.get(tenant.tenant_id)
        if cached:
            return replace(tenant, bot_user_id=cached)

        try:
            identity = await self._client_factory(tenant).auth_test()
        except (SlackAPIError, httpx.HTTPError, KeyError):
            logger.warning(
                "Could not resolve bot identity for tenant %s",
                tenant.tenant_id,
                exc_info=True,
            )
            return tenant

        self._bot_ids[tenant.tenant_id] = identity.user_id
        changes = {
            "bot_user_id": identity.user_id,
            "workspace_id": identity.team_id or tenant.workspace_id,
        }
        try:
            latest = await self._store.load(tenant.tenant_id) or tenant
            await self._store.save(latest.merged(changes))
        except StoreError:
            logger.warning(
                "Resolved identity for tenant %s but could not persist it",
                tenant.tenant_id,
                exc_info=True,
            )
        logger.info(
            "Resolved tenant %s bot=%s team=%s",
            tenant.tenant_id,
            identity.user_id,
            identity.team_id,
        )
        return tenant.merged(changes)
