"""Event publish/subscribe fallback path.

When a tenant has no direct model binding, the gateway publishes an
``operator.generate`` CloudEvent instead of streaming. The subject
``"<channel>:<thread_id>"`` routes the answer back: a later
``operator.text.completed`` event with the same subject is handled by
``CompletionSubscriber``, which posts the text into the thread.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from slack_gateway import conventions
from slack_gateway.client import SlackAPIError, SlackClientFactory
from slack_gateway.models import CloudEvent, TenantConfig
from slack_gateway.store.tiered import STORE_ERRORS
from slack_gateway.threads import ThreadManager

logger = logging.getLogger(__name__)


class PublishError(RuntimeError):
    """The event bus did not accept an event."""


def encode_subject(channel: str, thread_id: str) -> str:
    return f"{channel}:{thread_id}"


def parse_subject(subject: str | None) -> tuple[str, str]:
    """Split ``"<channel>:<thread_id>"``; thread ids never contain ``:``."""
    if not subject or ":" not in subject:
        raise ValueError(f"Malformed event subject: {subject!r}")
    channel, _, thread_id = subject.partition(":")
    if not channel or not thread_id:
        raise ValueError(f"Malformed event subject: {subject!r}")
    return channel, thread_id


class EventPublisher(Protocol):
    async def publish(self, event: CloudEvent, tenant: TenantConfig) -> None: ...


class MemoryEventPublisher:
    """Records published events (testing)."""

    def __init__(self) -> None:
        self.published: list[tuple[CloudEvent, str]] = []

    async def publish(self, event: CloudEvent, tenant: TenantConfig) -> None:
        self.published.append((event, tenant.tenant_id))

    def of_type(self, event_type: str) -> list[CloudEvent]:
        return [event for event, _ in self.published if event.type == event_type]


class HttpEventPublisher:
    """Publishes through the upstream ``EVENT_PUBLISH`` tool.

    JSON-RPC ``tools/call`` against ``{api_base_url}/mcp/self`` using the
    tenant's persistent token.
    """

    def __init__(self, http: httpx.AsyncClient | None = None) -> None:
        self._http = http

    async def publish(self, event: CloudEvent, tenant: TenantConfig) -> None:
        if not tenant.api_base_url or not tenant.auth_token:
            raise PublishError(f"Tenant {tenant.tenant_id} has no event bus binding")
        url = f"{tenant.api_base_url.rstrip('/')}/mcp/self"
        body = {
            "jsonrpc": "2.0",
            "id": event.id,
            "method": "tools/call",
            "params": {
                "name": "EVENT_PUBLISH",
                "arguments": {
                    "type": event.type,
                    "data": event.data,
                    "subject": event.subject,
                },
            },
        }
        headers = {
            "Authorization": f"Bearer {tenant.auth_token}",
            "Accept": "application/json, text/event-stream",
        }
        try:
            if self._http is not None:
                response = await self._http.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=30.0) as http:
                    response = await http.post(url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PublishError(f"EVENT_PUBLISH failed: {exc}") from exc
        logger.info("Published %s (subject=%s)", event.type, event.subject)


@dataclass
class CompletionResult:
    event_id: str
    handled: bool
    detail: str = ""


class CompletionSubscriber:
    """Posts ``operator.text.completed`` results back into their thread."""

    def __init__(
        self, threads: ThreadManager, client_factory: SlackClientFactory
    ) -> None:
        self._threads = threads
        self._client_factory = client_factory

    @staticmethod
    def extract_text(data: Any) -> str:
        if isinstance(data, str):
            return data
        if isinstance(data, Mapping):
            for key in ("text", "content", "message"):
                value = data.get(key)
                if isinstance(value, str):
                    return value
        return ""

    async def handle(self, event: CloudEvent, tenant: TenantConfig) -> CompletionResult:
        if event.type != conventions.COMPLETED_EVENT_TYPE:
            return CompletionResult(event.id, False, f"ignored type {event.type}")
        try:
            channel, thread_id = parse_subject(event.subject)
        except ValueError as exc:
            logger.warning("Dropping completion event %s: %s", event.id, exc)
            return CompletionResult(event.id, False, str(exc))

        text = self.extract_text(event.data)
        if not text:
            return CompletionResult(event.id, False, "no text in event data")

        try:
            metadata = await self._threads.get_metadata(channel, thread_id)
        except STORE_ERRORS:
            logger.warning(
                "No thread metadata for %s; replying in thread",
                event.subject,
                exc_info=True,
            )
            metadata = {}
        placeholder_ts = metadata.get("placeholder_ts")
        client = self._client_factory(tenant)
        try:
            if placeholder_ts:
                await client.update_message(channel, placeholder_ts, text)
                reply_ts = placeholder_ts
            elif metadata.get("is_direct"):
                reply_ts = await client.post_message(channel, text)
            else:
                reply_ts = await client.post_message(channel, text, thread_ts=thread_id)
        except (SlackAPIError, httpx.HTTPError) as exc:
            logger.warning(
                "Could not deliver completion for %s", event.subject, exc_info=True
            )
            return CompletionResult(event.id, False, str(exc))

        try:
            await self._threads.append_assistant(channel, thread_id, text, reply_ts)
            await self._threads.set_metadata(
                channel, thread_id, {"placeholder_ts": None, "pending_event": None}
            )
        except STORE_ERRORS:
            logger.warning(
                "Could not record completion for %s", event.subject, exc_info=True
            )
        return CompletionResult(event.id, True)
