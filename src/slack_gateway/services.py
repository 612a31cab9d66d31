"""Gateway-wide shared services (the composition root).

The server builds ONE set of services at startup and every route uses
it. Components receive their collaborators here; nothing else in the
package constructs stores or HTTP clients on its own.

Usage:
    # At server startup (in cli.py):
    services = init_services(load_settings())
    await start_services()

    # In route handlers:
    services = get_services()
    tenant = await services.registry.load(tenant_id)

    # In tests:
    services = init_services(settings, client_factory=lambda t: memory_client)
    ...
    reset_services()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from slack_gateway import conventions
from slack_gateway.client import HttpSlackClientFactory, SlackClientFactory
from slack_gateway.config import gateway_home
from slack_gateway.context import ContextBuilder, ContextSettings
from slack_gateway.events import EventDispatcher, EventHandler
from slack_gateway.publisher import (
    CompletionSubscriber,
    EventPublisher,
    HttpEventPublisher,
)
from slack_gateway.relay import GenerationRelay, HttpModelBackend, ModelBackend
from slack_gateway.schema import GatewaySettings
from slack_gateway.store import (
    KeyValueStore,
    TenantStore,
    TieredKeyValueStore,
    TieredTenantStore,
)
from slack_gateway.store.database import DatabaseTenantStore
from slack_gateway.store.disk import DiskKeyValueStore
from slack_gateway.store.keyvalue import KeyValueTenantStore
from slack_gateway.store.memory import MemoryKeyValueStore
from slack_gateway.store.redis_cache import RedisKeyValueStore
from slack_gateway.store.tiered import STORE_ERRORS, TIER_ERRORS
from slack_gateway.tenants import HttpTokenExchanger, TenantRegistry, TokenExchanger
from slack_gateway.threads import ThreadManager

logger = logging.getLogger(__name__)

_instance: GatewayServices | None = None
_instance_lock = threading.Lock()

SHUTDOWN_DRAIN_SECONDS = 5.0


@dataclass
class GatewayServices:
    """Everything the routes need, built once per process."""

    settings: GatewaySettings
    tenant_store: TieredTenantStore
    registry: TenantRegistry
    thread_store: KeyValueStore
    threads: ThreadManager
    dispatcher: EventDispatcher
    subscriber: CompletionSubscriber
    client_factory: SlackClientFactory
    http: httpx.AsyncClient | None = None
    started_at: float = field(default_factory=time.time)
    started: bool = False

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at


def data_dir(settings: GatewaySettings) -> Path:
    """The configured data dir, or ``data/`` under the gateway home."""
    if settings.store.data_dir:
        return Path(settings.store.data_dir).expanduser()
    return gateway_home() / conventions.DATA_DIR


def build_tenant_store(settings: GatewaySettings) -> TieredTenantStore:
    """Tiers in priority order: database, Redis, disk (always last)."""
    tiers: list[TenantStore] = []
    if settings.store.database_url:
        tiers.append(DatabaseTenantStore.from_url(settings.store.database_url))
    if settings.store.redis_url:
        tiers.append(
            KeyValueTenantStore(
                RedisKeyValueStore.from_url(
                    settings.store.redis_url, settings.store.redis_key_prefix
                ),
                name="redis",
            )
        )
    tiers.append(
        KeyValueTenantStore(
            DiskKeyValueStore(
                data_dir(settings) / conventions.TENANTS_FILENAME,
                flush_delay=settings.store.flush_delay_seconds,
            ),
            name="disk",
        )
    )
    return TieredTenantStore(tiers)


def build_thread_store(settings: GatewaySettings) -> KeyValueStore:
    """Threads go to Redis when shared, falling back to the local disk map."""
    disk = DiskKeyValueStore(
        data_dir(settings) / conventions.THREADS_FILENAME,
        flush_delay=settings.store.flush_delay_seconds,
    )
    if not settings.store.redis_url:
        return disk
    redis_store = RedisKeyValueStore.from_url(
        settings.store.redis_url, settings.store.redis_key_prefix
    )
    return TieredKeyValueStore([("redis", redis_store), ("disk", disk)])


def init_services(
    settings: GatewaySettings | None = None,
    *,
    tenant_store: TieredTenantStore | None = None,
    thread_store: KeyValueStore | None = None,
    client_factory: SlackClientFactory | None = None,
    model_backend: ModelBackend | None = None,
    publisher: EventPublisher | None = None,
    token_exchanger: TokenExchanger | None = None,
) -> GatewayServices:
    """Build the shared services. Called once at startup.

    Every keyword overrides the production component (for testing).
    """
    global _instance

    settings = settings or GatewaySettings()
    http: httpx.AsyncClient | None = None
    if None in (client_factory, model_backend, publisher, token_exchanger):
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, read=None), follow_redirects=True
        )

    if client_factory is None:
        client_factory = HttpSlackClientFactory(http=http)
    if model_backend is None:
        model_backend = HttpModelBackend(
            http,
            default_model=settings.relay.default_model,
            max_output_tokens=settings.relay.max_output_tokens,
            temperature=settings.relay.temperature,
        )
    if publisher is None:
        publisher = HttpEventPublisher(http)
    if token_exchanger is None:
        token_exchanger = HttpTokenExchanger(http)

    tenant_store = tenant_store or build_tenant_store(settings)
    thread_store = thread_store or build_thread_store(settings)

    registry = TenantRegistry(
        tenant_store,
        client_factory,
        token_exchanger,
        default_streaming=settings.relay.default_streaming,
    )
    threads = ThreadManager(
        thread_store, timeout_seconds=settings.threads.timeout_minutes * 60
    )
    relay = GenerationRelay(
        model_backend,
        update_interval=settings.relay.update_interval_ms / 1000,
        cursor=settings.relay.cursor,
        failure_text=settings.relay.failure_text,
    )
    handler = EventHandler(
        threads=threads,
        registry=registry,
        client_factory=client_factory,
        context_builder=ContextBuilder(
            ContextSettings(
                summary_threshold=settings.threads.summary_threshold,
                keep_recent=settings.threads.keep_recent,
            )
        ),
        relay=relay,
        publisher=publisher,
        thinking_text=settings.relay.thinking_text,
        failure_text=settings.relay.failure_text,
    )

    with _instance_lock:
        _instance = GatewayServices(
            settings=settings,
            tenant_store=tenant_store,
            registry=registry,
            thread_store=thread_store,
            threads=threads,
            dispatcher=EventDispatcher(handler),
            subscriber=CompletionSubscriber(threads, client_factory),
            client_factory=client_factory,
            http=http,
        )
        logger.info("Gateway services: tiers=%s", tenant_store.tier_names)
        return _instance


def get_services() -> GatewayServices:
    """Get the shared services instance.

    Raises RuntimeError if services haven't been initialized.
    """
    with _instance_lock:
        if _instance is None:
            raise RuntimeError(
                "Gateway services not initialized. Call init_services() first."
            )
        return _instance


def services_ready() -> bool:
    with _instance_lock:
        return _instance is not None


def reset_services() -> None:
    """Reset services (for testing). Not for production use."""
    global _instance
    with _instance_lock:
        _instance = None


async def start_services() -> None:
    """Warm up shared services before traffic is served.

    Creates the database table if needed, seeds the tenant counter and
    starts the expiry sweeper for an in-process thread store.
    """
    services = get_services()
    if services.started:
        return
    for tier in services.tenant_store.tiers:
        if isinstance(tier, DatabaseTenantStore):
            try:
                await tier.create_schema()
            except TIER_ERRORS:
                logger.warning("Could not create tenant table", exc_info=True)
    await services.tenant_store.initialize()
    thread_tiers = getattr(services.thread_store, "tiers", [services.thread_store])
    for tier in thread_tiers:
        if isinstance(tier, MemoryKeyValueStore):
            tier.start_sweeper(services.settings.store.sweep_interval_seconds)
    services.started = True


async def stop_services() -> None:
    """Gracefully stop shared services.

    Waits briefly for in-flight event handling, then flushes and closes
    stores and HTTP clients. Safe to call if services were never started.
    """
    with _instance_lock:
        instance = _instance
    if instance is None:
        return

    await instance.dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    await instance.tenant_store.close()
    try:
        await instance.thread_store.close()
    except STORE_ERRORS:
        logger.warning("Error closing thread store", exc_info=True)
    close = getattr(instance.client_factory, "close", None)
    if close is not None:
        await close()
    if instance.http is not None and not instance.http.is_closed:
        await instance.http.aclose()
    instance.started = False
