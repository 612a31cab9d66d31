"""Tests for the Slack Web API client."""

import json
from urllib.parse import parse_qs

import httpx
import pytest


def _client(handler):
    from slack_gateway.client import HttpSlackClient

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSlackClient("xoxb-token", http=http), http


class TestHttpSlackClient:
    async def test_post_message_in_thread(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "ts": "123.456"})

        client, http = _client(handler)
        async with http:
            ts = await client.post_message("C1", "hello", thread_ts="100.1")

        assert ts == "123.456"
        assert seen["url"] == "https://slack.com/api/chat.postMessage"
        assert seen["auth"] == "Bearer xoxb-token"
        assert seen["body"] == {"channel": "C1", "text": "hello", "thread_ts": "100.1"}

    async def test_replies_use_form_encoding(self):
        seen = {}

        def handler(request):
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(
                200, json={"ok": True, "messages": [{"user": "U_BOT", "ts": "1.1"}]}
            )

        client, http = _client(handler)
        async with http:
            replies = await client.get_thread_replies("C1", "100.1", limit=20)

        assert replies == [{"user": "U_BOT", "ts": "1.1"}]
        assert seen["form"] == {"channel": ["C1"], "ts": ["100.1"], "limit": ["20"]}

    async def test_not_ok_raises(self):
        from slack_gateway.client import SlackAPIError

        def handler(request):
            return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})

        client, http = _client(handler)
        async with http:
            with pytest.raises(SlackAPIError) as info:
                await client.update_message("C1", "1.1", "x")
        assert info.value.method == "chat.update"
        assert info.value.error == "channel_not_found"

    async def test_auth_test(self):
        def handler(request):
            return httpx.Response(
                200,
                json={"ok": True, "user_id": "U_BOT", "team_id": "T1", "bot_id": "B1"},
            )

        client, http = _client(handler)
        async with http:
            identity = await client.auth_test()
        assert (identity.user_id, identity.team_id, identity.bot_id) == (
            "U_BOT",
            "T1",
            "B1",
        )

    async def test_download_file_sends_token(self):
        def handler(request):
            assert request.headers["authorization"] == "Bearer xoxb-token"
            return httpx.Response(200, content=b"\x89PNG")

        client, http = _client(handler)
        async with http:
            content = await client.download_file("https://files.slack.com/a.png")
        assert content == b"\x89PNG"


class TestHttpSlackClientFactory:
    async def test_one_client_per_token(self, tenant):
        from dataclasses import replace

        from slack_gateway.client import HttpSlackClientFactory

        factory = HttpSlackClientFactory()
        try:
            first = factory(tenant)
            assert factory(tenant) is first
            assert factory(replace(tenant, bot_token="xoxb-other")) is not first
        finally:
            await factory.close()
        assert factory.http.is_closed
