"""Conversation threads keyed by (channel, thread identifier).

A thread identifier is the Slack thread root ``ts`` when the event is a
reply, otherwise the inciting message's own ``ts``. Replies in one Slack
thread therefore share context, while two top-level mentions in the same
channel never do.

A thread is live while ``now - last_activity < timeout``. Looking up an
expired thread silently starts a new one under the same key. Records are
stored with a TTL of twice the timeout so the store evicts them on its own.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from slack_gateway import conventions
from slack_gateway.models import Role, ThreadContext, ThreadMessage, thread_key
from slack_gateway.store.base import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10 * 60


def resolve_thread_id(message_ts: str, thread_ts: str | None = None) -> str:
    """The thread root if present, else the message itself."""
    return thread_ts or message_ts


class ThreadManager:
    """Create, extend and expire conversation threads.

    Args:
        store: Key-value store holding serialized ``ThreadContext`` records.
        timeout_seconds: Inactivity after which a thread is considered stale.
        clock: Time source (unix seconds), injectable for tests.
    """

    def __init__(
        self,
        store: KeyValueStore,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._timeout = timeout_seconds
        self._clock = clock

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    @property
    def ttl_seconds(self) -> float:
        return self._timeout * 2

    def _is_live(self, context: ThreadContext) -> bool:
        return self._clock() - context.last_activity < self._timeout

    async def _read(self, channel: str, thread_id: str) -> ThreadContext | None:
        data = await self._store.get(thread_key(channel, thread_id))
        if not data:
            return None
        context = ThreadContext.from_dict(data)
        return context if self._is_live(context) else None

    async def _write(self, context: ThreadContext) -> None:
        await self._store.set(context.key, context.to_dict(), ttl=self.ttl_seconds)
        await self._store.set(
            f"{conventions.CHANNEL_LATEST_PREFIX}{context.channel}:latest",
            context.thread_id,
            ttl=self.ttl_seconds,
        )

    async def get_or_create(
        self, channel: str, message_ts: str, thread_ts: str | None = None
    ) -> ThreadContext:
        """Return the live thread for this message, starting one if needed."""
        thread_id = resolve_thread_id(message_ts, thread_ts)
        context = await self._read(channel, thread_id)
        if context is not None:
            return context
        now = self._clock()
        context = ThreadContext(
            channel=channel, thread_id=thread_id, created_at=now, last_activity=now
        )
        await self._write(context)
        logger.debug("Started thread %s", context.key)
        return context

    async def append_user(
        self,
        channel: str,
        message_ts: str,
        text: str,
        *,
        thread_ts: str | None = None,
        user_id: str | None = None,
        user_name: str | None = None,
    ) -> ThreadContext:
        context = await self.get_or_create(channel, message_ts, thread_ts)
        return await self._append(
            context,
            ThreadMessage(
                role=Role.USER,
                content=text,
                timestamp=self._clock(),
                message_id=message_ts,
                user_id=user_id,
                user_name=user_name,
            ),
        )

    async def append_assistant(
        self,
        channel: str,
        thread_id: str,
        text: str,
        message_ts: str | None = None,
    ) -> ThreadContext:
        context = await self.get_or_create(channel, thread_id)
        return await self._append(
            context,
            ThreadMessage(
                role=Role.ASSISTANT,
                content=text,
                timestamp=self._clock(),
                message_id=message_ts,
            ),
        )

    async def _append(
        self, context: ThreadContext, message: ThreadMessage
    ) -> ThreadContext:
        context.messages.append(message)
        context.last_activity = message.timestamp
        await self._write(context)
        return context

    async def recent_messages(
        self, channel: str, thread_id: str, count: int = 10
    ) -> list[ThreadMessage]:
        """The last *count* messages of a live thread, oldest first."""
        context = await self._read(channel, thread_id)
        if context is None or count <= 0:
            return []
        return context.messages[-count:]

    async def is_active(self, channel: str, thread_id: str) -> bool:
        return await self._read(channel, thread_id) is not None

    async def reset(self, channel: str, thread_id: str) -> None:
        """Forget a thread; the next message starts from scratch."""
        await self._store.delete(thread_key(channel, thread_id))
        logger.info("Reset thread %s", thread_key(channel, thread_id))

    async def get_metadata(self, channel: str, thread_id: str) -> dict[str, Any]:
        context = await self._read(channel, thread_id)
        return dict(context.metadata) if context is not None else {}

    async def set_metadata(
        self, channel: str, thread_id: str, values: Mapping[str, Any]
    ) -> ThreadContext:
        """Merge *values* into the thread's metadata."""
        context = await self.get_or_create(channel, thread_id)
        context.metadata.update(values)
        await self._write(context)
        return context

    async def latest_thread(self, channel: str) -> str | None:
        """Identifier of the most recently touched thread in *channel*."""
        thread_id = await self._store.get(
            f"{conventions.CHANNEL_LATEST_PREFIX}{channel}:latest"
        )
        return thread_id if isinstance(thread_id, str) else None
