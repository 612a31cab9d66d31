"""Tests for prompt construction from thread history."""


def _messages(*contents):
    from slack_gateway.models import Role, ThreadMessage

    roles = [Role.USER, Role.ASSISTANT]
    return [
        ThreadMessage(role=roles[i % 2], content=text, timestamp=float(i))
        for i, text in enumerate(contents)
    ]


class TestSummarize:
    def test_counts_and_topics(self):
        from slack_gateway.context import summarize

        summary = summarize(_messages("deploy plan", "ok", "rollback?", "sure"))
        assert summary == (
            "[Summary of 4 previous messages: 2 from user, 2 from assistant. "
            "Topics discussed: deploy plan; rollback?]"
        )

    def test_topics_truncated(self):
        from slack_gateway.context import summarize

        summary = summarize(_messages(*(["x" * 150, "a"] * 4)))
        topics = summary.split("Topics discussed: ")[1]
        assert topics == "; ".join(["x" * 100] * 3)[:300] + "...]"


class TestCompactHistory:
    def test_short_history_kept_verbatim(self):
        from slack_gateway.context import compact_history

        prompt = compact_history(_messages("a", "b", "c"))
        assert [m.content for m in prompt] == ["a", "b", "c"]

    def test_long_history_summarized(self):
        from slack_gateway.context import compact_history
        from slack_gateway.models import Role

        history = _messages(*(f"m{i}" for i in range(12)))
        prompt = compact_history(history)
        assert len(prompt) == 6
        assert prompt[0].role == Role.USER
        assert prompt[0].content.startswith("[Summary of 7 previous messages")
        assert [m.content for m in prompt[1:]] == ["m7", "m8", "m9", "m10", "m11"]

    def test_threshold_is_exclusive(self):
        from slack_gateway.context import compact_history

        prompt = compact_history(_messages(*(f"m{i}" for i in range(10))))
        assert len(prompt) == 10


class TestContextBuilder:
    def test_single_message_has_no_history_frame(self):
        from slack_gateway.context import ContextBuilder

        prompt = ContextBuilder().build(_messages("hello"))
        assert len(prompt) == 1
        assert prompt[0].content == "<current_request>\nhello\n</current_request>"

    def test_history_is_framed(self):
        from slack_gateway.context import HISTORY_CLOSE, HISTORY_OPEN, ContextBuilder

        prompt = ContextBuilder().build(_messages("q1", "a1", "q2"))
        assert [m.content for m in prompt] == [
            HISTORY_OPEN,
            "q1",
            "a1",
            HISTORY_CLOSE,
            "<current_request>\nq2\n</current_request>",
        ]

    def test_twelve_prior_messages(self):
        from slack_gateway.context import ContextBuilder

        prompt = ContextBuilder().build(_messages(*(f"m{i}" for i in range(13))))
        # open + summary + 5 recent + close + request
        assert len(prompt) == 9
        assert prompt[1].content.startswith("[Summary of 7 previous messages")
        assert prompt[-1].content == "<current_request>\nm12\n</current_request>"

    def test_media_attached_to_request(self):
        from slack_gateway.context import ContextBuilder
        from slack_gateway.models import MediaPart

        media = [MediaPart(media_type="image/png", data="aGk=", name="a.png")]
        prompt = ContextBuilder().build(_messages("look"), media)
        assert prompt[-1].media == media
        assert "look [1 file(s) attached]" in prompt[-1].content

    def test_empty_thread_rejected(self):
        import pytest

        from slack_gateway.context import ContextBuilder

        with pytest.raises(ValueError):
            ContextBuilder().build([])
