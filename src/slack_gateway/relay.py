"""Streaming generation relay.

Streams model output back into Slack. Deltas from the model backend are
accumulated into ``StreamUpdate`` items by an async generator; a separate
consumer decides how often to push them to Slack. With a "thinking"
placeholder and streaming enabled, the placeholder is edited at most once
per ``update_interval`` with a cursor glyph appended, and a final edit
always lands when the stream ends. Without a placeholder the relay waits
for the full text and posts it once.

A stream that fails after producing text keeps the partial answer. Only a
stream that fails before producing anything surfaces the fixed failure
message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from slack_gateway.client import SlackAPIError, SlackClient
from slack_gateway.models import PromptMessage, Role, TenantConfig

logger = logging.getLogger(__name__)

CURSOR = " ▌"
FAILURE_TEXT = (
    "Sorry, an error occurred while processing your message. Please try again."
)
EMPTY_TEXT = "Sorry, I couldn't generate a response."
DEFAULT_MODEL = "anthropic/claude-sonnet-4"


class ModelBackendError(RuntimeError):
    """The model endpoint refused the request or sent a broken stream."""


class GenerationError(RuntimeError):
    """Generation failed before any text was produced."""


STREAM_ERRORS: tuple[type[BaseException], ...] = (
    httpx.HTTPError,
    ModelBackendError,
    TimeoutError,
)
SLACK_ERRORS: tuple[type[BaseException], ...] = (SlackAPIError, httpx.HTTPError)


@dataclass
class StreamUpdate:
    """Accumulated text so far; ``is_final`` on the last item only."""

    text: str
    is_final: bool = False


class ModelBackend(Protocol):
    """Source of incremental text for a prompt."""

    def stream(
        self, messages: Sequence[PromptMessage], tenant: TenantConfig
    ) -> AsyncIterator[str]:
        """Yield text deltas until the generation finishes."""
        ...


# --- HTTP backend ---


def to_prompt(
    messages: Sequence[PromptMessage], system_prompt: str | None = None
) -> list[dict[str, Any]]:
    """Convert prompt messages to the upstream language-model prompt shape."""
    prompt: list[dict[str, Any]] = []
    if system_prompt:
        prompt.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role == Role.SYSTEM:
            prompt.append({"role": "system", "content": message.content})
            continue
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        if message.role == Role.USER:
            parts.extend(
                {"type": "file", "data": part.data_uri, "mediaType": part.media_type}
                for part in message.media
            )
        prompt.append({"role": str(message.role), "content": parts})
    return prompt


def parse_stream_line(line: str) -> tuple[str, str] | None:
    """Interpret one line of the model's event stream.

    Returns ``("delta", text)``, ``("end", "")`` or None for lines that
    carry nothing (SSE fields, keep-alives, unknown payloads).
    """
    line = line.strip()
    if not line or line.startswith(("event:", "id:", "retry:", ":")):
        return None
    if line.startswith("data:"):
        line = line[len("data:") :].strip()
    if line == "[DONE]":
        return ("end", "")
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if kind == "text-delta":
        return ("delta", str(payload.get("delta") or payload.get("textDelta") or ""))
    if kind == "finish":
        return ("end", "")
    if kind == "error":
        raise ModelBackendError(f"Model stream error: {payload.get('error')}")
    return None


class HttpModelBackend:
    """Streams from ``{api_base_url}/mcp/{model_provider_id}``.

    Sends a JSON-RPC ``tools/call`` of ``LLM_DO_STREAM`` authenticated with
    the tenant's persistent token and reads text deltas from the
    server-sent event stream.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        *,
        default_model: str = DEFAULT_MODEL,
        max_output_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> None:
        self._http = http
        self._default_model = default_model
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature

    def request_body(
        self, messages: Sequence[PromptMessage], tenant: TenantConfig
    ) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": int(time.time() * 1000),
            "method": "tools/call",
            "params": {
                "name": "LLM_DO_STREAM",
                "arguments": {
                    "modelId": tenant.model_id or self._default_model,
                    "callOptions": {
                        "prompt": to_prompt(messages, tenant.system_prompt),
                        "maxOutputTokens": self._max_output_tokens,
                        "temperature": self._temperature,
                    },
                },
            },
        }

    async def stream(
        self, messages: Sequence[PromptMessage], tenant: TenantConfig
    ) -> AsyncIterator[str]:
        if not tenant.has_model:
            raise ModelBackendError(f"Tenant {tenant.tenant_id} has no model binding")
        url = f"{tenant.api_base_url.rstrip('/')}/mcp/{tenant.model_provider_id}"
        headers = {
            "Authorization": f"Bearer {tenant.auth_token}",
            "Accept": "text/event-stream",
        }
        body = self.request_body(messages, tenant)

        if self._http is not None:
            async for delta in self._read(self._http, url, body, headers):
                yield delta
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None)) as http:
            async for delta in self._read(http, url, body, headers):
                yield delta

    async def _read(
        self,
        http: httpx.AsyncClient,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> AsyncIterator[str]:
        async with http.stream("POST", url, json=body, headers=headers) as response:
            if response.status_code >= 400:
                detail = (await response.aread())[:200]
                raise ModelBackendError(
                    f"Model endpoint returned {response.status_code}: {detail!r}"
                )
            async for line in response.aiter_lines():
                parsed = parse_stream_line(line)
                if parsed is None:
                    continue
                kind, delta = parsed
                if kind == "end":
                    return
                if delta:
                    yield delta


# --- Mock backend ---


@dataclass
class MockModelBackend:
    """Scripted backend for tests and local runs.

    Yields ``deltas`` one by one. ``fail_after`` raises ``ModelBackendError``
    after that many deltas; ``gate`` holds the stream until it is set.
    """

    deltas: list[str] = field(default_factory=lambda: ["Hello", " from", " mock"])
    delay: float = 0.0
    fail_after: int | None = None
    gate: asyncio.Event | None = None
    calls: list[tuple[list[PromptMessage], TenantConfig]] = field(
        default_factory=list
    )

    def set_response(self, text: str) -> None:
        words = text.split(" ")
        self.deltas = [w if i == 0 else f" {w}" for i, w in enumerate(words)]

    async def stream(
        self, messages: Sequence[PromptMessage], tenant: TenantConfig
    ) -> AsyncIterator[str]:
        self.calls.append((list(messages), tenant))
        if self.gate is not None:
            await self.gate.wait()
        for index, delta in enumerate(self.deltas):
            if self.fail_after is not None and index >= self.fail_after:
                raise ModelBackendError("mock stream failure")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield delta
        if self.fail_after is not None and self.fail_after >= len(self.deltas):
            raise ModelBackendError("mock stream failure")


# --- Relay ---


async def stream_updates(
    backend: ModelBackend,
    messages: Sequence[PromptMessage],
    tenant: TenantConfig,
) -> AsyncIterator[StreamUpdate]:
    """Accumulate backend deltas into running text.

    Always ends with exactly one final update. Raises ``GenerationError``
    only if the stream failed before yielding any text.
    """
    text = ""
    try:
        async for delta in backend.stream(messages, tenant):
            text += delta
            yield StreamUpdate(text)
    except STREAM_ERRORS as exc:
        if not text:
            raise GenerationError(str(exc)) from exc
        logger.warning(
            "Model stream for tenant %s failed after %d chars; keeping partial text",
            tenant.tenant_id,
            len(text),
            exc_info=True,
        )
    yield StreamUpdate(text, is_final=True)


async def drain_throttled(
    updates: AsyncIterator[StreamUpdate],
    edit: Callable[[str, bool], Awaitable[None]],
    interval: float,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Push updates through *edit* at most once per *interval*.

    The final update is always pushed, even inside the throttle window.
    Returns the final text.
    """
    last_edit = clock()
    async for update in updates:
        if update.is_final:
            await edit(update.text, True)
            return update.text
        now = clock()
        if now - last_edit >= interval:
            await edit(update.text, False)
            last_edit = now
    return ""


class GenerationRelay:
    """Runs a generation and surfaces it in Slack.

    Args:
        backend: Model backend producing text deltas.
        update_interval: Minimum seconds between placeholder edits.
        cursor: Glyph appended to in-progress edits.
        failure_text: Message shown when nothing could be generated.
        clock: Monotonic time source for throttling.
    """

    def __init__(
        self,
        backend: ModelBackend,
        *,
        update_interval: float = 0.5,
        cursor: str = CURSOR,
        failure_text: str = FAILURE_TEXT,
        empty_text: str = EMPTY_TEXT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self._interval = update_interval
        self._cursor = cursor
        self._failure_text = failure_text
        self._empty_text = empty_text
        self._clock = clock

    async def respond(
        self,
        messages: Sequence[PromptMessage],
        tenant: TenantConfig,
        *,
        client: SlackClient,
        channel: str,
        thread_ts: str | None = None,
        placeholder_ts: str | None = None,
    ) -> str:
        """Generate a reply and put it in Slack.

        Returns the final text, or ``""`` when nothing was generated (the
        failure message has then already been shown).
        """
        try:
            if placeholder_ts and tenant.behavior.streaming:
                return await self._stream_into_placeholder(
                    messages, tenant, client, channel, thread_ts, placeholder_ts
                )
            return await self._complete_then_post(
                messages, tenant, client, channel, thread_ts, placeholder_ts
            )
        except GenerationError:
            logger.warning(
                "Generation failed for tenant %s in %s",
                tenant.tenant_id,
                channel,
                exc_info=True,
            )
            await self._show_failure(client, channel, thread_ts, placeholder_ts)
            return ""

    async def _stream_into_placeholder(
        self,
        messages: Sequence[PromptMessage],
        tenant: TenantConfig,
        client: SlackClient,
        channel: str,
        thread_ts: str | None,
        placeholder_ts: str,
    ) -> str:
        async def edit(text: str, final: bool) -> None:
            body = (text or self._empty_text) if final else text + self._cursor
            try:
                await client.update_message(channel, placeholder_ts, body)
            except SLACK_ERRORS:
                if not final:
                    logger.debug("Skipped streaming edit in %s", channel, exc_info=True)
                    return
                logger.warning(
                    "Final edit failed in %s; posting reply instead",
                    channel,
                    exc_info=True,
                )
                await client.post_message(channel, body, thread_ts=thread_ts)

        return await drain_throttled(
            stream_updates(self.backend, messages, tenant),
            edit,
            self._interval,
            self._clock,
        )

    async def _complete_then_post(
        self,
        messages: Sequence[PromptMessage],
        tenant: TenantConfig,
        client: SlackClient,
        channel: str,
        thread_ts: str | None,
        placeholder_ts: str | None,
    ) -> str:
        text = ""
        async for update in stream_updates(self.backend, messages, tenant):
            text = update.text
        body = text or self._empty_text
        if placeholder_ts:
            try:
                await client.update_message(channel, placeholder_ts, body)
                return text
            except SLACK_ERRORS:
                logger.warning(
                    "Placeholder edit failed in %s; posting reply instead",
                    channel,
                    exc_info=True,
                )
        await client.post_message(channel, body, thread_ts=thread_ts)
        return text

    async def _show_failure(
        self,
        client: SlackClient,
        channel: str,
        thread_ts: str | None,
        placeholder_ts: str | None,
    ) -> None:
        try:
            if placeholder_ts:
                await client.update_message(
                    channel, placeholder_ts, f"❌ {self._failure_text}"
                )
            else:
                await client.post_message(
                    channel, self._failure_text, thread_ts=thread_ts
                )
        except SLACK_ERRORS:
            logger.warning(
                "Could not post failure message to %s", channel, exc_info=True
            )
