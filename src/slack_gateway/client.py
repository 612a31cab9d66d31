"""Slack API client abstraction.

Provides a Protocol for the Slack Web API calls the gateway makes and
two implementations:
- MemorySlackClient: In-memory, no network calls (testing)
- HttpSlackClient: Real Slack Web API calls over httpx (production)

Clients are per tenant because every tenant has its own bot token; the
gateway asks a ``SlackClientFactory`` for the client of a given tenant.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from slack_gateway.models import TenantConfig

SLACK_API_BASE = "https://slack.com/api"


class SlackAPIError(RuntimeError):
    """Slack answered with ``ok: false``."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"Slack API error in {method}: {error}")
        self.method = method
        self.error = error


@dataclass
class BotIdentity:
    """Result of ``auth.test``: who the bot token belongs to."""

    user_id: str
    team_id: str
    bot_id: str | None = None


@runtime_checkable
class SlackClient(Protocol):
    """Protocol for Slack API operations."""

    async def post_message(
        self, channel: str, text: str, thread_ts: str | None = None
    ) -> str:
        """Post a message to a channel. Returns the message ts."""
        ...

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        """Replace the text of an existing message."""
        ...

    async def add_reaction(self, channel: str, ts: str, emoji: str) -> None: ...

    async def remove_reaction(self, channel: str, ts: str, emoji: str) -> None: ...

    async def get_thread_replies(
        self, channel: str, thread_ts: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Messages in a thread, root first."""
        ...

    async def auth_test(self) -> BotIdentity: ...

    async def download_file(self, url: str) -> bytes:
        """Fetch a private file URL with the bot token."""
        ...


SlackClientFactory = Callable[[TenantConfig], SlackClient]


@dataclass
class SentMessage:
    """Record of a message sent through the client (for testing)."""

    channel: str
    text: str
    thread_ts: str | None
    ts: str


class MemorySlackClient:
    """In-memory Slack client for testing.

    Records all operations for inspection. No network calls.
    Implements SlackClient protocol.
    """

    def __init__(self, bot_user_id: str = "U_BOT", team_id: str = "T_TEST") -> None:
        self.bot_user_id = bot_user_id
        self.team_id = team_id
        self.sent_messages: list[SentMessage] = []
        self.updated_messages: list[dict[str, Any]] = []
        self.reactions: list[dict[str, str]] = []
        self.removed_reactions: list[dict[str, str]] = []
        self.thread_replies: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.files: dict[str, bytes] = {}
        self.auth_calls = 0
        self.fail_updates = False
        self._ts_counter: int = 1000000

    def _next_ts(self) -> str:
        self._ts_counter += 1
        return f"{int(time.time())}.{self._ts_counter:06d}"

    async def post_message(
        self, channel: str, text: str, thread_ts: str | None = None
    ) -> str:
        ts = self._next_ts()
        self.sent_messages.append(
            SentMessage(channel=channel, text=text, thread_ts=thread_ts, ts=ts)
        )
        return ts

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        if self.fail_updates:
            raise SlackAPIError("chat.update", "ratelimited")
        self.updated_messages.append({"channel": channel, "ts": ts, "text": text})

    async def add_reaction(self, channel: str, ts: str, emoji: str) -> None:
        self.reactions.append({"channel": channel, "ts": ts, "emoji": emoji})

    async def remove_reaction(self, channel: str, ts: str, emoji: str) -> None:
        self.removed_reactions.append({"channel": channel, "ts": ts, "emoji": emoji})

    async def get_thread_replies(
        self, channel: str, thread_ts: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        return list(self.thread_replies.get((channel, thread_ts), []))[:limit]

    async def auth_test(self) -> BotIdentity:
        self.auth_calls += 1
        return BotIdentity(user_id=self.bot_user_id, team_id=self.team_id)

    async def download_file(self, url: str) -> bytes:
        if url not in self.files:
            raise SlackAPIError("files.download", "file_not_found")
        return self.files[url]


class HttpSlackClient:
    """Real Slack Web API client for one bot token.

    Pass a shared ``httpx.AsyncClient`` to reuse connections across
    tenants; otherwise a client is created per call.
    """

    def __init__(
        self,
        bot_token: str,
        http: httpx.AsyncClient | None = None,
        base_url: str = SLACK_API_BASE,
    ) -> None:
        self._token = bot_token
        self._http = http
        self._base_url = base_url

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}/{method}"
        if self._http is not None:
            return await self._http.post(url, headers=self._headers, **kwargs)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.post(url, headers=self._headers, **kwargs)

    async def _api_call(
        self, method: str, *, form: bool = False, **params: Any
    ) -> dict[str, Any]:
        """Call a Web API method. Read methods need form encoding."""
        if form:
            response = await self._request(method, data=params)
        else:
            response = await self._request(method, json=params)
        response.raise_for_status()
        data = response.json()
        if not data.get("ok"):
            raise SlackAPIError(method, data.get("error", "unknown"))
        return data

    async def post_message(
        self, channel: str, text: str, thread_ts: str | None = None
    ) -> str:
        params: dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            params["thread_ts"] = thread_ts
        result = await self._api_call("chat.postMessage", **params)
        return result["ts"]

    async def update_message(self, channel: str, ts: str, text: str) -> None:
        await self._api_call("chat.update", channel=channel, ts=ts, text=text)

    async def add_reaction(self, channel: str, ts: str, emoji: str) -> None:
        await self._api_call("reactions.add", channel=channel, timestamp=ts, name=emoji)

    async def remove_reaction(self, channel: str, ts: str, emoji: str) -> None:
        await self._api_call(
            "reactions.remove", channel=channel, timestamp=ts, name=emoji
        )

    async def get_thread_replies(
        self, channel: str, thread_ts: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        result = await self._api_call(
            "conversations.replies",
            form=True,
            channel=channel,
            ts=thread_ts,
            limit=limit,
        )
        return result.get("messages", [])

    async def auth_test(self) -> BotIdentity:
        result = await self._api_call("auth.test")
        return BotIdentity(
            user_id=result["user_id"],
            team_id=result.get("team_id", ""),
            bot_id=result.get("bot_id"),
        )

    async def download_file(self, url: str) -> bytes:
        if self._http is not None:
            response = await self._http.get(url, headers=self._headers)
        else:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                response = await client.get(url, headers=self._headers)
        response.raise_for_status()
        return response.content


@dataclass
class HttpSlackClientFactory:
    """Hands out one ``HttpSlackClient`` per bot token over a shared pool."""

    http: httpx.AsyncClient = field(
        default_factory=lambda: httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    )
    _clients: dict[str, HttpSlackClient] = field(default_factory=dict)

    def __call__(self, tenant: TenantConfig) -> SlackClient:
        client = self._clients.get(tenant.bot_token)
        if client is None:
            client = HttpSlackClient(tenant.bot_token, http=self.http)
            self._clients[tenant.bot_token] = client
        return client

    async def close(self) -> None:
        self._clients.clear()
        await self.http.aclose()
