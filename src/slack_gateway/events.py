"""Slack event processing.

Decides which events reach the model and drives one message through the
thread manager and either the generation relay or the event bus:

- Bot-authored, self-authored and non-content subtypes are dropped.
- DMs and ``app_mention`` events are always answered.
- Thread replies are answered only if the bot already takes part.
- Plain channel chatter is never answered.

The gateway hands events to ``EventDispatcher``, which runs each one as
a detached task so the webhook can be acknowledged immediately.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from collections.abc import Sequence

import httpx

from slack_gateway import conventions
from slack_gateway.client import SlackAPIError, SlackClient, SlackClientFactory
from slack_gateway.context import ContextBuilder
from slack_gateway.models import (
    CloudEvent,
    EventKind,
    IgnoredEvent,
    MediaPart,
    MessageEvent,
    PassthroughEvent,
    PromptMessage,
    Role,
    SlackEvent,
    TenantConfig,
)
from slack_gateway.publisher import EventPublisher, PublishError, encode_subject
from slack_gateway.relay import FAILURE_TEXT, GenerationRelay, to_prompt
from slack_gateway.store.tiered import STORE_ERRORS
from slack_gateway.tenants import TenantRegistry
from slack_gateway.threads import ThreadManager

logger = logging.getLogger(__name__)

IGNORED_SUBTYPES = frozenset(
    {
        "bot_message",
        "message_changed",
        "message_deleted",
        "channel_join",
        "channel_leave",
        "channel_topic",
        "channel_purpose",
        "channel_name",
        "channel_archive",
        "channel_unarchive",
        "group_join",
        "group_leave",
        "group_topic",
        "group_purpose",
        "group_name",
        "group_archive",
        "group_unarchive",
    }
)

THINKING_TEXT = "Thinking..."
STATUS_REACTION = "eyes"
MAX_MEDIA_BYTES = 10 * 1024 * 1024

MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")

SLACK_ERRORS: tuple[type[BaseException], ...] = (SlackAPIError, httpx.HTTPError)


def extract_mentions(text: str) -> list[str]:
    return MENTION_RE.findall(text or "")


def is_bot_mentioned(text: str, bot_user_id: str | None) -> bool:
    return bool(bot_user_id) and bot_user_id in extract_mentions(text)


def strip_mention(text: str, bot_user_id: str | None) -> str:
    """Remove the bot's own ``<@ID>`` tokens (and trailing space)."""
    if bot_user_id:
        pattern = re.compile(rf"<@{re.escape(bot_user_id)}(?:\|[^>]*)?>\s*")
        return pattern.sub("", text).strip()
    # Unknown bot id: drop a leading mention, which is how app_mention text starts
    return re.sub(r"^\s*<@[A-Z0-9]+(?:\|[^>]*)?>\s*", "", text).strip()


def should_ignore(event: SlackEvent, bot_user_id: str | None) -> bool:
    """True for events that must never reach the model."""
    if isinstance(event, IgnoredEvent):
        return True
    if isinstance(event, PassthroughEvent):
        return False
    if event.bot_id:
        return True
    if event.subtype in IGNORED_SUBTYPES:
        return True
    if not event.user:
        return True
    return bool(bot_user_id) and event.user == bot_user_id


class EventHandler:
    """Handles one parsed Slack event for one tenant."""

    def __init__(
        self,
        *,
        threads: ThreadManager,
        registry: TenantRegistry,
        client_factory: SlackClientFactory,
        context_builder: ContextBuilder | None = None,
        relay: GenerationRelay | None = None,
        publisher: EventPublisher | None = None,
        thinking_text: str = THINKING_TEXT,
        failure_text: str = FAILURE_TEXT,
    ) -> None:
        self._threads = threads
        self._registry = registry
        self._client_factory = client_factory
        self._context = context_builder or ContextBuilder()
        self._relay = relay
        self._publisher = publisher
        self._thinking_text = thinking_text
        self._failure_text = failure_text

    async def handle(self, event: SlackEvent, tenant: TenantConfig) -> None:
        if isinstance(event, PassthroughEvent):
            await self._forward(event, tenant)
            return
        if not isinstance(event, MessageEvent):
            return

        tenant = await self._registry.ensure_identity(tenant)
        if should_ignore(event, tenant.bot_user_id):
            logger.debug("Ignoring self-authored event %s", event.ts)
            return

        client = self._client_factory(tenant)
        if not await self.should_process(event, tenant.bot_user_id, client):
            return
        await self.process_message(event, tenant, client)

    async def should_process(
        self, event: MessageEvent, bot_user_id: str | None, client: SlackClient
    ) -> bool:
        if event.kind == EventKind.APP_MENTION:
            return True
        if event.is_direct:
            return True
        if is_bot_mentioned(event.text, bot_user_id):
            # The paired app_mention event carries this message
            return False
        if event.is_thread_reply:
            return await self._bot_in_thread(event, bot_user_id, client)
        return False

    async def _bot_in_thread(
        self, event: MessageEvent, bot_user_id: str | None, client: SlackClient
    ) -> bool:
        history = await self._threads.recent_messages(
            event.channel, event.thread_id, count=50
        )
        if any(m.role == Role.ASSISTANT for m in history):
            return True
        if not bot_user_id:
            return False
        try:
            replies = await client.get_thread_replies(event.channel, event.thread_id)
        except SLACK_ERRORS:
            logger.warning(
                "Could not read thread %s:%s", event.channel, event.thread_id,
                exc_info=True,
            )
            return False
        return any(reply.get("user") == bot_user_id for reply in replies)

    async def process_message(
        self, event: MessageEvent, tenant: TenantConfig, client: SlackClient
    ) -> None:
        text = strip_mention(event.text, tenant.bot_user_id)
        if not text and not event.files:
            return

        # DMs without a thread get top-level replies; everything else threads
        reply_thread = event.thread_ts if event.is_direct else event.thread_id
        media = await self._download_media(event, client)
        placeholder_ts = None
        if tenant.behavior.show_status:
            placeholder_ts = await self._show_status(event, client, reply_thread)

        # From here on the user must see an answer or the failure text
        try:
            context = await self._threads.append_user(
                event.channel,
                event.ts,
                text,
                thread_ts=event.thread_ts,
                user_id=event.user,
            )
            messages = self._context.build(context.messages, media)

            if self._relay is None or not tenant.has_model:
                if self._publisher is not None:
                    await self._request_generation(
                        event,
                        tenant,
                        client,
                        messages,
                        context.thread_id,
                        placeholder_ts,
                    )
                    return
                logger.warning(
                    "Tenant %s has no model binding and no event bus",
                    tenant.tenant_id,
                )
                await self._show_failure(
                    client, event.channel, reply_thread, placeholder_ts
                )
                return

            final = await self._relay.respond(
                messages,
                tenant,
                client=client,
                channel=event.channel,
                thread_ts=reply_thread,
                placeholder_ts=placeholder_ts,
            )
        except Exception:
            logger.exception(
                "Message handling failed for tenant %s in %s",
                tenant.tenant_id,
                event.channel,
            )
            await self._show_failure(
                client, event.channel, reply_thread, placeholder_ts
            )
            return

        if not final:
            return
        try:
            await self._threads.append_assistant(
                event.channel, context.thread_id, final, placeholder_ts
            )
        except STORE_ERRORS:
            # Reply already shown; only the history entry is lost
            logger.warning(
                "Could not record reply in %s:%s",
                event.channel,
                context.thread_id,
                exc_info=True,
            )

    async def _show_status(
        self, event: MessageEvent, client: SlackClient, reply_thread: str | None
    ) -> str | None:
        try:
            await client.add_reaction(event.channel, event.ts, STATUS_REACTION)
        except SLACK_ERRORS:
            logger.debug("Status reaction failed", exc_info=True)
        placeholder_ts = None
        try:
            placeholder_ts = await client.post_message(
                event.channel, self._thinking_text, thread_ts=reply_thread
            )
        except SLACK_ERRORS:
            logger.warning("Could not post thinking placeholder", exc_info=True)
        try:
            await client.remove_reaction(event.channel, event.ts, STATUS_REACTION)
        except SLACK_ERRORS:
            logger.debug("Removing status reaction failed", exc_info=True)
        return placeholder_ts

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
            logger.warning("Could not post failure message", exc_info=True)

    async def _download_media(
        self, event: MessageEvent, client: SlackClient
    ) -> list[MediaPart]:
        parts: list[MediaPart] = []
        for slack_file in event.files:
            if not slack_file.is_image or not slack_file.url_private:
                logger.debug("Skipping non-image file %s", slack_file.id)
                continue
            try:
                content = await client.download_file(slack_file.url_private)
            except SLACK_ERRORS:
                logger.warning(
                    "Could not download file %s", slack_file.id, exc_info=True
                )
                continue
            if len(content) > MAX_MEDIA_BYTES:
                logger.warning(
                    "File %s is %d bytes, over the attachment limit",
                    slack_file.id,
                    len(content),
                )
                continue
            parts.append(
                MediaPart(
                    media_type=slack_file.mimetype,
                    data=base64.b64encode(content).decode("ascii"),
                    name=slack_file.name,
                )
            )
        return parts

    async def _request_generation(
        self,
        event: MessageEvent,
        tenant: TenantConfig,
        client: SlackClient,
        messages: Sequence[PromptMessage],
        thread_id: str,
        placeholder_ts: str | None,
    ) -> None:
        assert self._publisher is not None
        cloud_event = CloudEvent(
            type=conventions.GENERATE_EVENT_TYPE,
            subject=encode_subject(event.channel, thread_id),
            data={
                "messages": to_prompt(messages, tenant.system_prompt),
                "context": {
                    "channel": event.channel,
                    "thread_id": thread_id,
                    "message_ts": event.ts,
                    "placeholder_ts": placeholder_ts,
                    "model_id": tenant.model_id,
                    "agent_id": tenant.agent_id,
                },
            },
        )
        await self._threads.set_metadata(
            event.channel,
            thread_id,
            {
                "placeholder_ts": placeholder_ts,
                "is_direct": event.is_direct and event.thread_ts is None,
                "pending_event": cloud_event.id,
            },
        )
        try:
            await self._publisher.publish(cloud_event, tenant)
        except PublishError:
            logger.warning("Could not publish generation request", exc_info=True)
            reply_thread = event.thread_ts if event.is_direct else thread_id
            await self._show_failure(
                client, event.channel, reply_thread, placeholder_ts
            )

    async def _forward(self, event: PassthroughEvent, tenant: TenantConfig) -> None:
        if self._publisher is None:
            return
        payload = event.payload
        channel = payload.get("channel") or (payload.get("item") or {}).get("channel")
        if isinstance(channel, dict):
            channel = channel.get("id")
        cloud_event = CloudEvent(
            type=f"{conventions.PASSTHROUGH_EVENT_PREFIX}{event.kind}",
            subject=channel if isinstance(channel, str) else None,
            data={**payload, "team_id": event.team_id},
        )
        try:
            await self._publisher.publish(cloud_event, tenant)
        except PublishError:
            logger.warning("Could not forward %s event", event.kind, exc_info=True)


class EventDispatcher:
    """Runs event handling as detached tasks and keeps track of them."""

    def __init__(self, handler: EventHandler) -> None:
        self.handler = handler
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, event: SlackEvent, tenant: TenantConfig) -> asyncio.Task[None]:
        task = asyncio.create_task(self._run(event, tenant))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, event: SlackEvent, tenant: TenantConfig) -> None:
        try:
            await self.handler.handle(event, tenant)
        except Exception:
            logger.exception("Event handling failed for tenant %s", tenant.tenant_id)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks (shutdown and tests)."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
