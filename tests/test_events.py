"""Tests for Slack event filtering and message processing."""

from types import SimpleNamespace

import pytest
import redis.exceptions


def _envelope(**event):
    return {"type": "event_callback", "team_id": "T_TEST", "event": event}


def _parse(**event):
    from slack_gateway.models import parse_event

    return parse_event(_envelope(**event))


class UnreachableStore:
    """A thread store whose Redis connection is down."""

    async def get(self, key):
        raise redis.exceptions.ConnectionError("redis down")

    async def set(self, key, value, ttl=None):
        raise redis.exceptions.ConnectionError("redis down")

    async def delete(self, key):
        raise redis.exceptions.ConnectionError("redis down")

    async def keys(self, pattern="*"):
        raise redis.exceptions.ConnectionError("redis down")

    async def size(self):
        raise redis.exceptions.ConnectionError("redis down")

    async def close(self):
        pass


@pytest.fixture
async def env(tenant, slack_client):
    """An EventHandler over in-memory collaborators."""
    from slack_gateway.events import EventHandler
    from slack_gateway.publisher import MemoryEventPublisher
    from slack_gateway.relay import GenerationRelay, MockModelBackend
    from slack_gateway.store import TieredTenantStore
    from slack_gateway.store.keyvalue import KeyValueTenantStore
    from slack_gateway.store.memory import MemoryKeyValueStore
    from slack_gateway.tenants import TenantRegistry
    from slack_gateway.threads import ThreadManager

    store = TieredTenantStore([KeyValueTenantStore(MemoryKeyValueStore(), "disk")])
    await store.save(tenant)
    registry = TenantRegistry(store, lambda _t: slack_client)
    threads = ThreadManager(MemoryKeyValueStore())
    backend = MockModelBackend()
    publisher = MemoryEventPublisher()
    handler = EventHandler(
        threads=threads,
        registry=registry,
        client_factory=lambda _t: slack_client,
        relay=GenerationRelay(backend, update_interval=0.0),
        publisher=publisher,
    )
    return SimpleNamespace(
        handler=handler,
        threads=threads,
        backend=backend,
        publisher=publisher,
        slack=slack_client,
        tenant=tenant,
        registry=registry,
    )


class TestMentions:
    def test_extract(self):
        from slack_gateway.events import extract_mentions

        assert extract_mentions("<@U1> and <@U2|bob>") == ["U1", "U2"]

    def test_is_bot_mentioned(self):
        from slack_gateway.events import is_bot_mentioned

        assert is_bot_mentioned("hey <@U_BOT>", "U_BOT")
        assert not is_bot_mentioned("hey <@U_OTHER>", "U_BOT")
        assert not is_bot_mentioned("hey <@U_BOT>", None)

    def test_strip_mention(self):
        from slack_gateway.events import strip_mention

        assert strip_mention("<@U_BOT> what time is it?", "U_BOT") == "what time is it?"
        assert strip_mention("ask <@U2> about it", "U_BOT") == "ask <@U2> about it"
        assert strip_mention("<@U_BOT> hi", None) == "hi"


class TestShouldIgnore:
    @pytest.mark.parametrize(
        "fields",
        [
            {"bot_id": "B1", "user": "U1"},
            {"subtype": "message_changed", "user": "U1"},
            {"subtype": "channel_join", "user": "U1"},
            {"subtype": "group_topic", "user": "U1"},
            {"user": "U_BOT"},
            {},
        ],
    )
    def test_ignored(self, fields):
        from slack_gateway.events import should_ignore

        event = _parse(type="message", channel="C1", ts="1.1", text="x", **fields)
        assert should_ignore(event, "U_BOT")

    def test_user_message_kept(self):
        from slack_gateway.events import should_ignore

        event = _parse(type="message", channel="C1", ts="1.1", text="x", user="U1")
        assert not should_ignore(event, "U_BOT")

    def test_unknown_and_passthrough(self):
        from slack_gateway.events import should_ignore

        assert should_ignore(_parse(type="pin_added"), "U_BOT")
        reaction = _parse(type="reaction_added", reaction="+1", item={"channel": "C1"})
        assert not should_ignore(reaction, "U_BOT")


class TestParseEvent:
    def test_direct_message(self):
        from slack_gateway.models import EventKind, MessageEvent

        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        assert isinstance(event, MessageEvent)
        assert event.kind == EventKind.MESSAGE
        assert event.is_direct
        assert event.thread_id == "100.1"
        assert not event.is_thread_reply

    def test_thread_reply(self):
        event = _parse(
            type="message", channel="C1", user="U1", ts="100.5", thread_ts="100.1"
        )
        assert event.is_thread_reply
        assert event.thread_id == "100.1"
        assert not event.is_direct

    def test_missing_channel_is_ignored(self):
        from slack_gateway.models import IgnoredEvent

        assert isinstance(_parse(type="message", ts="1.1"), IgnoredEvent)


class TestProcessing:
    async def test_direct_message_answered_top_level(self, env):
        from slack_gateway.models import Role

        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        await env.handler.handle(event, env.tenant)

        placeholder = env.slack.sent_messages[0]
        assert (placeholder.text, placeholder.thread_ts) == ("Thinking...", None)
        assert env.slack.reactions == [
            {"channel": "D1", "ts": "100.1", "emoji": "eyes"}
        ]
        assert env.slack.removed_reactions == env.slack.reactions
        assert env.slack.updated_messages[-1] == {
            "channel": "D1",
            "ts": placeholder.ts,
            "text": "Hello from mock",
        }
        history = await env.threads.recent_messages("D1", "100.1")
        assert [(m.role, m.content) for m in history] == [
            (Role.USER, "hi"),
            (Role.ASSISTANT, "Hello from mock"),
        ]

    async def test_store_outage_replaces_placeholder_with_failure(
        self, env, slack_client
    ):
        from slack_gateway.events import EventHandler
        from slack_gateway.relay import FAILURE_TEXT, GenerationRelay
        from slack_gateway.threads import ThreadManager

        handler = EventHandler(
            threads=ThreadManager(UnreachableStore()),
            registry=env.registry,
            client_factory=lambda _t: slack_client,
            relay=GenerationRelay(env.backend, update_interval=0.0),
        )
        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        await handler.handle(event, env.tenant)

        placeholder = slack_client.sent_messages[0]
        assert [m.text for m in slack_client.sent_messages] == ["Thinking..."]
        assert slack_client.updated_messages == [
            {"channel": "D1", "ts": placeholder.ts, "text": f"❌ {FAILURE_TEXT}"}
        ]
        assert env.backend.calls == []

    async def test_redis_outage_falls_back_to_disk_threads(self, env, slack_client):
        from slack_gateway.events import EventHandler
        from slack_gateway.relay import GenerationRelay
        from slack_gateway.store import TieredKeyValueStore
        from slack_gateway.store.memory import MemoryKeyValueStore
        from slack_gateway.threads import ThreadManager

        disk = MemoryKeyValueStore()
        threads = ThreadManager(
            TieredKeyValueStore([("redis", UnreachableStore()), ("disk", disk)])
        )
        handler = EventHandler(
            threads=threads,
            registry=env.registry,
            client_factory=lambda _t: slack_client,
            relay=GenerationRelay(env.backend, update_interval=0.0),
        )
        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        await handler.handle(event, env.tenant)

        assert slack_client.updated_messages[-1]["text"] == "Hello from mock"
        history = await threads.recent_messages("D1", "100.1")
        assert [m.content for m in history] == ["hi", "Hello from mock"]
        assert await disk.size() > 0

    async def test_app_mention_answered_in_thread(self, env):
        event = _parse(
            type="app_mention", channel="C1", user="U1", text="<@U_BOT> hello", ts="5.5"
        )
        await env.handler.handle(event, env.tenant)

        assert env.slack.sent_messages[0].thread_ts == "5.5"
        prompt, _ = env.backend.calls[0]
        assert prompt[-1].content == "<current_request>\nhello\n</current_request>"

    async def test_channel_message_with_mention_left_to_app_mention(self, env):
        event = _parse(
            type="message", channel="C1", user="U1", text="<@U_BOT> hello", ts="5.5"
        )
        await env.handler.handle(event, env.tenant)
        assert env.backend.calls == []
        assert env.slack.sent_messages == []

    async def test_plain_channel_chatter_ignored(self, env):
        event = _parse(type="message", channel="C1", user="U1", text="lunch?", ts="5.5")
        await env.handler.handle(event, env.tenant)
        assert env.backend.calls == []

    async def test_own_message_ignored(self, env):
        event = _parse(type="message", channel="D1", user="U_BOT", text="x", ts="5.5")
        await env.handler.handle(event, env.tenant)
        assert env.backend.calls == []

    async def test_thread_reply_with_bot_participation(self, env):
        env.slack.thread_replies[("C1", "100.1")] = [
            {"user": "U1", "ts": "100.1"},
            {"user": "U_BOT", "ts": "100.2"},
        ]
        event = _parse(
            type="message", channel="C1", user="U1", text="more", ts="100.3",
            thread_ts="100.1",
        )
        await env.handler.handle(event, env.tenant)
        assert len(env.backend.calls) == 1
        assert env.slack.sent_messages[0].thread_ts == "100.1"

    async def test_thread_reply_without_bot_ignored(self, env):
        env.slack.thread_replies[("C1", "100.1")] = [{"user": "U1", "ts": "100.1"}]
        event = _parse(
            type="message", channel="C1", user="U2", text="+1", ts="100.3",
            thread_ts="100.1",
        )
        await env.handler.handle(event, env.tenant)
        assert env.backend.calls == []

    async def test_thread_reply_after_local_answer(self, env):
        mention = _parse(
            type="app_mention", channel="C1", user="U1", text="<@U_BOT> q", ts="100.1"
        )
        await env.handler.handle(mention, env.tenant)
        follow_up = _parse(
            type="message", channel="C1", user="U1", text="and?", ts="100.4",
            thread_ts="100.1",
        )
        await env.handler.handle(follow_up, env.tenant)

        assert len(env.backend.calls) == 2
        prompt, _ = env.backend.calls[1]
        contents = [m.content for m in prompt]
        assert "q" in contents
        assert "Hello from mock" in contents

    async def test_no_status_posts_single_reply(self, env):
        from dataclasses import replace

        from slack_gateway.models import ResponseBehavior

        quiet = replace(env.tenant, behavior=ResponseBehavior(show_status=False))
        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        await env.handler.handle(event, quiet)

        assert env.slack.reactions == []
        assert [m.text for m in env.slack.sent_messages] == ["Hello from mock"]

    async def test_unresolved_bot_identity_looked_up(self, env):
        from dataclasses import replace

        anonymous = replace(env.tenant, bot_user_id=None)
        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        await env.handler.handle(event, anonymous)
        assert env.slack.auth_calls == 1
        assert len(env.backend.calls) == 1

    async def test_image_attachment_forwarded(self, env):
        env.slack.files["https://files/a.png"] = b"png-bytes"
        event = _parse(
            type="message",
            channel="D1",
            user="U1",
            text="what is this",
            ts="100.1",
            files=[
                {"id": "F1", "name": "a.png", "mimetype": "image/png",
                 "url_private": "https://files/a.png"},
                {"id": "F2", "name": "doc.pdf", "mimetype": "application/pdf",
                 "url_private": "https://files/doc.pdf"},
            ],
        )
        await env.handler.handle(event, env.tenant)

        prompt, _ = env.backend.calls[0]
        request = prompt[-1]
        assert len(request.media) == 1
        assert request.media[0].media_type == "image/png"
        assert "[1 file(s) attached]" in request.content

    async def test_oversized_image_skipped(self, env, monkeypatch):
        import slack_gateway.events

        monkeypatch.setattr(slack_gateway.events, "MAX_MEDIA_BYTES", 4)
        env.slack.files["https://files/big.png"] = b"0123456789"
        event = _parse(
            type="message", channel="D1", user="U1", text="see", ts="100.1",
            files=[{"id": "F1", "mimetype": "image/png",
                    "url_private": "https://files/big.png"}],
        )
        await env.handler.handle(event, env.tenant)
        prompt, _ = env.backend.calls[0]
        assert prompt[-1].media == []


class TestEventBusFallback:
    async def test_unbound_tenant_publishes_generate_request(self, env):
        from dataclasses import replace

        unbound = replace(env.tenant, model_provider_id=None)
        event = _parse(
            type="app_mention", channel="C1", user="U1", text="<@U_BOT> hi", ts="100.1"
        )
        await env.handler.handle(event, unbound)

        assert env.backend.calls == []
        (published,) = env.publisher.of_type("operator.generate")
        assert published.subject == "C1:100.1"
        placeholder_ts = env.slack.sent_messages[0].ts
        assert published.data["context"]["placeholder_ts"] == placeholder_ts
        assert published.data["messages"][-1]["role"] == "user"
        metadata = await env.threads.get_metadata("C1", "100.1")
        assert metadata["pending_event"] == published.id
        assert metadata["is_direct"] is False

    async def test_no_model_and_no_bus_shows_failure(self, env, tenant, slack_client):
        from dataclasses import replace

        from slack_gateway.events import EventHandler
        from slack_gateway.relay import FAILURE_TEXT

        handler = EventHandler(
            threads=env.threads,
            registry=env.registry,
            client_factory=lambda _t: slack_client,
        )
        event = _parse(type="message", channel="D1", user="U1", text="hi", ts="100.1")
        await handler.handle(event, replace(tenant, model_provider_id=None))
        assert slack_client.updated_messages[-1]["text"] == f"❌ {FAILURE_TEXT}"

    async def test_passthrough_events_forwarded(self, env):
        event = _parse(
            type="reaction_added", user="U1", reaction="tada",
            item={"type": "message", "channel": "C1", "ts": "1.1"},
        )
        await env.handler.handle(event, env.tenant)

        (forwarded,) = env.publisher.of_type("slack.reaction_added")
        assert forwarded.subject == "C1"
        assert forwarded.data["reaction"] == "tada"
        assert forwarded.data["team_id"] == "T_TEST"


class TestEventDispatcher:
    async def test_failures_are_logged_not_raised(self, caplog):
        from slack_gateway.events import EventDispatcher

        class Boom:
            async def handle(self, event, tenant):
                raise RuntimeError("boom")

        dispatcher = EventDispatcher(Boom())
        tenant = SimpleNamespace(tenant_id="conn-1")
        task = dispatcher.dispatch(object(), tenant)
        assert dispatcher.pending == 1
        await dispatcher.drain(timeout=1)
        assert task.done()
        assert dispatcher.pending == 0
        assert "Event handling failed" in caplog.text
