"""Build the model payload from a thread's accumulated messages.

Long threads are compacted: once more than ``summary_threshold`` prior
messages exist, everything except the last ``keep_recent`` is replaced by
one synthetic summary message. The history is then framed between
sentinel markers so the model answers only the current request.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from slack_gateway.models import MediaPart, PromptMessage, Role, ThreadMessage

HISTORY_OPEN = (
    "<previous_conversation>\n"
    "The messages below are the previous conversation history for context. "
    "Respond ONLY to <current_request>, use the context only to understand "
    "the conversation.\n"
    "</previous_conversation>"
)
HISTORY_CLOSE = "<end_previous_conversation>"

TOPIC_SNIPPET_CHARS = 100
TOPICS_MAX_CHARS = 300


@dataclass
class ContextSettings:
    summary_threshold: int = 10
    keep_recent: int = 5


def summarize(messages: Sequence[ThreadMessage]) -> str:
    """One-line digest: counts by role plus the openings of user turns."""
    user_turns = [m for m in messages if m.role == Role.USER]
    assistant_count = sum(1 for m in messages if m.role == Role.ASSISTANT)
    topics = "; ".join(m.content[:TOPIC_SNIPPET_CHARS] for m in user_turns)
    if len(topics) > TOPICS_MAX_CHARS:
        topics = topics[:TOPICS_MAX_CHARS] + "..."
    return (
        f"[Summary of {len(messages)} previous messages: "
        f"{len(user_turns)} from user, {assistant_count} from assistant. "
        f"Topics discussed: {topics}]"
    )


def compact_history(
    messages: Sequence[ThreadMessage], settings: ContextSettings | None = None
) -> list[PromptMessage]:
    """Turn prior thread messages into prompt messages, summarizing if long."""
    settings = settings or ContextSettings()
    history = list(messages)
    prompt: list[PromptMessage] = []
    if len(history) > settings.summary_threshold:
        keep = max(settings.keep_recent, 0)
        older = history[: len(history) - keep] if keep else history
        history = history[len(history) - keep :] if keep else []
        prompt.append(PromptMessage(role=Role.USER, content=summarize(older)))
    prompt.extend(PromptMessage(role=m.role, content=m.content) for m in history)
    return prompt


def current_content(text: str, media_count: int = 0) -> str:
    if media_count:
        return f"{text} [{media_count} file(s) attached]"
    return text


def frame_request(
    history: Sequence[PromptMessage],
    text: str,
    media: Sequence[MediaPart] = (),
) -> list[PromptMessage]:
    """Wrap *history* in sentinels and append the live request."""
    request = PromptMessage(
        role=Role.USER,
        content=f"<current_request>\n{text}\n</current_request>",
        media=list(media),
    )
    if not history:
        return [request]
    return [
        PromptMessage(role=Role.USER, content=HISTORY_OPEN),
        *history,
        PromptMessage(role=Role.USER, content=HISTORY_CLOSE),
        request,
    ]


class ContextBuilder:
    """Produces the model payload for the newest user turn of a thread."""

    def __init__(self, settings: ContextSettings | None = None) -> None:
        self.settings = settings or ContextSettings()

    def build(
        self,
        messages: Sequence[ThreadMessage],
        media: Sequence[MediaPart] = (),
    ) -> list[PromptMessage]:
        """*messages* ends with the current user turn; the rest is history."""
        if not messages:
            raise ValueError("Cannot build a prompt from an empty thread")
        *prior, current = messages
        history = compact_history(prior, self.settings)
        text = current_content(current.content, len(media))
        return frame_request(history, text, media)
