"""Data models for the Slack gateway.

Defines the core data structures used throughout the gateway:
- Tenant configuration (one per workspace connection)
- Conversation threads and the messages they accumulate
- Inbound Slack events as a tagged union keyed by event type
- Prompt messages handed to the model backend
- CloudEvents for the publish/subscribe fallback path
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from slack_gateway import conventions


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class TenantConfigError(ValueError):
    """A tenant record is missing a mandatory credential."""


# --- Tenants ---


@dataclass
class ResponseBehavior:
    """Per-tenant switches for how replies are surfaced in Slack."""

    streaming: bool = True  # edit the placeholder while tokens arrive
    show_status: bool = True  # eyes reaction + "thinking" placeholder

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ResponseBehavior:
        data = data or {}
        return cls(
            streaming=bool(data.get("streaming", True)),
            show_status=bool(data.get("show_status", True)),
        )


@dataclass
class TenantConfig:
    """Configuration for one workspace connection.

    ``bot_token`` and ``signing_secret`` are mandatory. Everything else may
    stay empty until it is resolved (``workspace_id`` and ``bot_user_id``
    come from the first successful ``auth.test`` call).
    """

    tenant_id: str
    bot_token: str
    signing_secret: str
    organization_id: str = ""
    api_base_url: str = ""
    bootstrap_token: str = ""  # short-lived, delivered with the config push
    api_token: str = ""  # long-lived, obtained by exchanging bootstrap_token
    workspace_id: str | None = None
    bot_user_id: str | None = None
    model_provider_id: str | None = None
    model_id: str | None = None
    agent_id: str | None = None
    system_prompt: str | None = None
    behavior: ResponseBehavior = field(default_factory=ResponseBehavior)
    configured_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise TenantConfigError("tenant_id is required")
        if not self.bot_token:
            raise TenantConfigError(f"Tenant {self.tenant_id}: bot_token is required")
        if not self.signing_secret:
            raise TenantConfigError(
                f"Tenant {self.tenant_id}: signing_secret is required"
            )

    @property
    def auth_token(self) -> str:
        """Token used against the upstream API (persistent one preferred)."""
        return self.api_token or self.bootstrap_token

    @property
    def has_model(self) -> bool:
        """Whether the relay can call the model endpoint directly."""
        return bool(self.api_base_url and self.model_provider_id and self.auth_token)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TenantConfig:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and k != "behavior"}
        for required in ("tenant_id", "bot_token", "signing_secret"):
            values.setdefault(required, "")
        return cls(**values, behavior=ResponseBehavior.from_dict(data.get("behavior")))

    def merged(self, update: Mapping[str, Any]) -> TenantConfig:
        """Return a copy with only the explicitly-set fields of *update* applied."""
        known = {f.name for f in fields(self)} - {"tenant_id", "behavior"}
        changes = {k: v for k, v in update.items() if k in known and v is not None}
        behavior = self.behavior
        if isinstance(update.get("behavior"), Mapping):
            behavior = ResponseBehavior.from_dict(
                {**asdict(self.behavior), **update["behavior"]}
            )
        return replace(self, **changes, behavior=behavior)

    def redacted(self) -> dict[str, Any]:
        """Dictionary form with credentials masked, for admin responses."""
        data = self.to_dict()
        for key in ("bot_token", "signing_secret", "bootstrap_token", "api_token"):
            if data.get(key):
                data[key] = "***"
        return data


# --- Threads ---


class Role(StrEnum):
    """Author role of a thread message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ThreadMessage:
    """One turn in a conversation thread."""

    role: Role
    content: str
    timestamp: float
    message_id: str | None = None  # Slack ts of the originating message
    user_id: str | None = None
    user_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": str(self.role),
            "content": self.content,
            "timestamp": self.timestamp,
            "message_id": self.message_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ThreadMessage:
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            timestamp=float(data.get("timestamp", 0.0)),
            message_id=data.get("message_id"),
            user_id=data.get("user_id"),
            user_name=data.get("user_name"),
        )


@dataclass
class ThreadContext:
    """A logical conversation: one Slack thread, DM or fresh mention.

    Messages are kept in local arrival order, which is the order they are
    replayed to the model.
    """

    channel: str
    thread_id: str
    created_at: float
    last_activity: float
    messages: list[ThreadMessage] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return thread_key(self.channel, self.thread_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "thread_id": self.thread_id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ThreadContext:
        return cls(
            channel=data["channel"],
            thread_id=data["thread_id"],
            created_at=float(data.get("created_at", 0.0)),
            last_activity=float(data.get("last_activity", 0.0)),
            messages=[ThreadMessage.from_dict(m) for m in data.get("messages", [])],
            metadata=dict(data.get("metadata") or {}),
        )


def thread_key(channel: str, thread_id: str) -> str:
    """Store key for the thread identified by (channel, thread_id)."""
    return f"{conventions.THREAD_KEY_PREFIX}{channel}:{thread_id}"


# --- Prompt ---


@dataclass
class MediaPart:
    """A binary attachment forwarded to the model as a data URI."""

    media_type: str
    data: str  # base64
    name: str = ""

    @property
    def data_uri(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


@dataclass
class PromptMessage:
    """A message in the payload sent to the model backend."""

    role: Role
    content: str
    media: list[MediaPart] = field(default_factory=list)


# --- Slack events ---


class EventKind(StrEnum):
    """Slack event types the gateway distinguishes."""

    MESSAGE = "message"
    APP_MENTION = "app_mention"
    REACTION_ADDED = "reaction_added"
    CHANNEL_CREATED = "channel_created"
    MEMBER_JOINED_CHANNEL = "member_joined_channel"


PASSTHROUGH_KINDS = frozenset(
    {
        EventKind.REACTION_ADDED,
        EventKind.CHANNEL_CREATED,
        EventKind.MEMBER_JOINED_CHANNEL,
    }
)


@dataclass
class SlackFile:
    """A file shared alongside a message."""

    id: str
    name: str = ""
    mimetype: str = ""
    url_private: str = ""

    @property
    def is_image(self) -> bool:
        return self.mimetype.startswith("image/")


@dataclass
class MessageEvent:
    """A ``message`` or ``app_mention`` event carrying user text."""

    kind: EventKind
    channel: str
    ts: str
    text: str = ""
    user: str | None = None
    thread_ts: str | None = None
    subtype: str | None = None
    bot_id: str | None = None
    channel_type: str | None = None
    team_id: str | None = None
    files: list[SlackFile] = field(default_factory=list)

    @property
    def is_direct(self) -> bool:
        """Whether this is a direct message (IM channels start with ``D``)."""
        return self.channel_type == "im" or self.channel.startswith("D")

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.ts

    @property
    def thread_id(self) -> str:
        """Thread identifier: the thread root if replying, else this message."""
        return self.thread_ts or self.ts


@dataclass
class PassthroughEvent:
    """An event forwarded to the event bus without model involvement."""

    kind: EventKind
    payload: dict[str, Any]
    team_id: str | None = None


@dataclass
class IgnoredEvent:
    """Anything the gateway does not act on."""

    type_name: str
    reason: str = "unhandled event type"


SlackEvent = MessageEvent | PassthroughEvent | IgnoredEvent


def parse_event(envelope: Mapping[str, Any]) -> SlackEvent:
    """Turn a Slack event envelope into one of the typed event variants."""
    event = envelope.get("event")
    if not isinstance(event, Mapping):
        return IgnoredEvent(str(envelope.get("type", "")), reason="no event body")

    type_name = str(event.get("type", ""))
    team_id = envelope.get("team_id") or event.get("team")
    try:
        kind = EventKind(type_name)
    except ValueError:
        return IgnoredEvent(type_name)

    if kind in PASSTHROUGH_KINDS:
        return PassthroughEvent(kind=kind, payload=dict(event), team_id=team_id)

    channel = event.get("channel")
    ts = event.get("ts")
    if not channel or not ts:
        return IgnoredEvent(type_name, reason="missing channel or ts")

    files = [
        SlackFile(
            id=str(f.get("id", "")),
            name=f.get("name", ""),
            mimetype=f.get("mimetype", ""),
            url_private=f.get("url_private_download") or f.get("url_private", ""),
        )
        for f in event.get("files") or []
        if isinstance(f, Mapping)
    ]
    return MessageEvent(
        kind=kind,
        channel=str(channel),
        ts=str(ts),
        text=event.get("text") or "",
        user=event.get("user"),
        thread_ts=event.get("thread_ts"),
        subtype=event.get("subtype"),
        bot_id=event.get("bot_id"),
        channel_type=event.get("channel_type"),
        team_id=team_id,
        files=files,
    )


# --- Event bus ---


@dataclass
class CloudEvent:
    """A CloudEvents 1.0 envelope used on the publish/subscribe path."""

    type: str
    data: Any = None
    subject: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    source: str = conventions.EVENT_SOURCE
    time: str = field(default_factory=utc_now_iso)
    specversion: str = "1.0"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.subject is None:
            data.pop("subject")
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CloudEvent:
        if not data.get("type"):
            raise ValueError("CloudEvent requires a type")
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
