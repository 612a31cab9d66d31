"""Tests for the CloudEvent publish/subscribe fallback."""

import json

import httpx
import pytest


@pytest.fixture
def threads():
    from slack_gateway.store.memory import MemoryKeyValueStore
    from slack_gateway.threads import ThreadManager

    return ThreadManager(MemoryKeyValueStore())


@pytest.fixture
def subscriber(threads, slack_client):
    from slack_gateway.publisher import CompletionSubscriber

    return CompletionSubscriber(threads, lambda _t: slack_client)


def _completed(subject, data):
    from slack_gateway.models import CloudEvent

    return CloudEvent(type="operator.text.completed", subject=subject, data=data)


class TestSubject:
    def test_round_trip(self):
        from slack_gateway.publisher import encode_subject, parse_subject

        assert parse_subject(encode_subject("C1", "100.1")) == ("C1", "100.1")

    @pytest.mark.parametrize("subject", [None, "", "C1", ":100.1", "C1:"])
    def test_malformed(self, subject):
        from slack_gateway.publisher import parse_subject

        with pytest.raises(ValueError):
            parse_subject(subject)


class TestCloudEvent:
    def test_defaults(self):
        from slack_gateway.models import CloudEvent

        event = CloudEvent(type="operator.generate", data={"a": 1})
        data = event.to_dict()
        assert data["specversion"] == "1.0"
        assert data["id"] and data["time"]
        assert "subject" not in data

    def test_from_dict_requires_type(self):
        from slack_gateway.models import CloudEvent

        with pytest.raises(ValueError):
            CloudEvent.from_dict({"data": {}})

    def test_from_dict_ignores_unknown_fields(self):
        from slack_gateway.models import CloudEvent

        event = CloudEvent.from_dict(
            {"type": "x", "id": "e1", "datacontenttype": "application/json"}
        )
        assert (event.type, event.id) == ("x", "e1")


class TestHttpEventPublisher:
    async def test_publishes_through_tool_call(self, tenant):
        from slack_gateway.models import CloudEvent
        from slack_gateway.publisher import HttpEventPublisher

        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"result": {}})

        event = CloudEvent(type="operator.generate", subject="C1:1.1", data={"k": 1})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            await HttpEventPublisher(http).publish(event, tenant)

        assert seen["url"] == "https://mesh.test/mcp/self"
        assert seen["auth"] == "Bearer persistent-key"
        assert seen["body"]["params"] == {
            "name": "EVENT_PUBLISH",
            "arguments": {
                "type": "operator.generate",
                "data": {"k": 1},
                "subject": "C1:1.1",
            },
        }

    async def test_http_failure(self, tenant):
        from slack_gateway.models import CloudEvent
        from slack_gateway.publisher import HttpEventPublisher, PublishError

        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as http:
            with pytest.raises(PublishError):
                await HttpEventPublisher(http).publish(CloudEvent(type="x"), tenant)

    async def test_tenant_without_bus(self, tenant):
        from dataclasses import replace

        from slack_gateway.models import CloudEvent
        from slack_gateway.publisher import HttpEventPublisher, PublishError

        with pytest.raises(PublishError):
            await HttpEventPublisher().publish(
                CloudEvent(type="x"), replace(tenant, api_base_url="")
            )


class TestCompletionSubscriber:
    async def test_fills_placeholder(self, subscriber, threads, slack_client, tenant):
        from slack_gateway.models import Role

        await threads.append_user("C1", "100.1", "question")
        await threads.set_metadata(
            "C1", "100.1", {"placeholder_ts": "200.1", "pending_event": "e1"}
        )

        event = _completed("C1:100.1", {"text": "answer"})
        result = await subscriber.handle(event, tenant)

        assert result.handled
        assert slack_client.updated_messages == [
            {"channel": "C1", "ts": "200.1", "text": "answer"}
        ]
        history = await threads.recent_messages("C1", "100.1")
        assert history[-1].role == Role.ASSISTANT
        assert history[-1].message_id == "200.1"
        metadata = await threads.get_metadata("C1", "100.1")
        assert metadata["placeholder_ts"] is None
        assert metadata["pending_event"] is None

    async def test_thread_reply_without_placeholder(
        self, subscriber, threads, slack_client, tenant
    ):
        await threads.append_user("C1", "100.1", "question")
        await subscriber.handle(_completed("C1:100.1", "plain text"), tenant)
        sent = slack_client.sent_messages[0]
        assert (sent.channel, sent.text) == ("C1", "plain text")
        assert sent.thread_ts == "100.1"

    async def test_store_outage_still_delivers(self, slack_client, tenant):
        from unittest.mock import AsyncMock

        import redis.exceptions

        from slack_gateway.publisher import CompletionSubscriber

        threads = AsyncMock()
        threads.get_metadata.side_effect = redis.exceptions.ConnectionError("down")
        threads.append_assistant.side_effect = redis.exceptions.ConnectionError("down")
        subscriber = CompletionSubscriber(threads, lambda _t: slack_client)

        result = await subscriber.handle(_completed("C1:100.1", "answer"), tenant)

        assert result.handled
        sent = slack_client.sent_messages[0]
        assert (sent.text, sent.thread_ts) == ("answer", "100.1")

    async def test_direct_message_posts_top_level(
        self, subscriber, threads, slack_client, tenant
    ):
        await threads.set_metadata("D1", "100.1", {"is_direct": True})
        await subscriber.handle(_completed("D1:100.1", {"content": "hi"}), tenant)
        assert slack_client.sent_messages[0].thread_ts is None

    @pytest.mark.parametrize(
        ("event_type", "subject", "data"),
        [
            ("operator.generate", "C1:100.1", {"text": "x"}),
            ("operator.text.completed", "no-separator", {"text": "x"}),
            ("operator.text.completed", "C1:100.1", {"other": 1}),
        ],
    )
    async def test_not_handled(
        self, subscriber, slack_client, tenant, event_type, subject, data
    ):
        from slack_gateway.models import CloudEvent

        event = CloudEvent(type=event_type, subject=subject, data=data)
        result = await subscriber.handle(event, tenant)
        assert not result.handled
        assert slack_client.sent_messages == []

    async def test_delivery_failure_reported(
        self, subscriber, threads, slack_client, tenant
    ):
        slack_client.fail_updates = True
        await threads.set_metadata("C1", "100.1", {"placeholder_ts": "200.1"})
        result = await subscriber.handle(_completed("C1:100.1", {"text": "x"}), tenant)
        assert not result.handled
        assert "ratelimited" in result.detail
