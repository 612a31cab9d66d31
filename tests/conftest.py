"""Shared test fixtures for the Slack gateway."""

import asyncio
import contextlib
import time
from types import SimpleNamespace

import httpx
import pytest

SIGNING_SECRET = "8f742231b10e8888abcd99yyyzzz85a5"


class StaticTokenExchanger:
    """Token exchanger that hands out a fixed key and counts calls."""

    def __init__(self, token: str = "persistent-key") -> None:
        self.token = token
        self.calls: list[str] = []

    async def exchange(self, tenant):
        self.calls.append(tenant.tenant_id)
        return self.token


@pytest.fixture
def slack_client():
    """Create a fresh MemorySlackClient."""
    from slack_gateway.client import MemorySlackClient

    return MemorySlackClient(bot_user_id="U_BOT", team_id="T_TEST")


@pytest.fixture
def tenant():
    """A fully configured tenant with a direct model binding."""
    from slack_gateway.models import TenantConfig

    return TenantConfig(
        tenant_id="conn-1",
        bot_token="xoxb-test",
        signing_secret=SIGNING_SECRET,
        organization_id="org-1",
        api_base_url="https://mesh.test",
        api_token="persistent-key",
        model_provider_id="llm-binding",
        model_id="anthropic/claude-sonnet-4",
        workspace_id="T_TEST",
        bot_user_id="U_BOT",
    )


@pytest.fixture
def token_exchanger():
    return StaticTokenExchanger()


@pytest.fixture
def sign():
    """Return a helper producing valid Slack signature headers for a body."""
    from slack_gateway.signature import compute_signature

    def _sign(body: bytes, secret: str = SIGNING_SECRET, timestamp=None):
        ts = str(int(time.time()) if timestamp is None else timestamp)
        return {
            "X-Slack-Signature": compute_signature(body, ts, secret),
            "X-Slack-Request-Timestamp": ts,
            "Content-Type": "application/json",
        }

    return _sign


@pytest.fixture
def settings(tmp_path):
    """Settings with local persistence under tmp_path and no shared tiers."""
    from slack_gateway.schema import GatewaySettings, StoreSettings

    return GatewaySettings(
        store=StoreSettings(data_dir=str(tmp_path / "data"), flush_delay_seconds=0.01)
    )


@pytest.fixture
async def gateway(settings, slack_client, tenant, token_exchanger):
    """Async httpx client wired to the gateway app with in-memory collaborators."""
    from slack_gateway.app import GatewayServer
    from slack_gateway.publisher import MemoryEventPublisher
    from slack_gateway.relay import MockModelBackend
    from slack_gateway.services import init_services, reset_services, stop_services
    from slack_gateway.store.memory import MemoryKeyValueStore

    reset_services()
    backend = MockModelBackend()
    publisher = MemoryEventPublisher()
    services = init_services(
        settings,
        thread_store=MemoryKeyValueStore(),
        client_factory=lambda _tenant: slack_client,
        model_backend=backend,
        publisher=publisher,
        token_exchanger=token_exchanger,
    )
    await services.tenant_store.save(tenant)

    server = GatewayServer()
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield SimpleNamespace(
            client=client,
            services=services,
            backend=backend,
            publisher=publisher,
            slack=slack_client,
            tenant=tenant,
        )

    await stop_services()
    reset_services()


@pytest.fixture(autouse=True)
async def _cancel_stray_tasks():
    """Cancel any tasks that leaked from a test."""
    yield
    await asyncio.sleep(0)
    current = asyncio.current_task()
    for task in asyncio.all_tasks():
        if task is not current and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(asyncio.shield(task), timeout=0.1)
