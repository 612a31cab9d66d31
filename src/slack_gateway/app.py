"""Gateway Server - Core Application

Architecture:
    GatewayServer
        /health                      - Health and metrics
        /events/{tenant_id}          - Signed Slack webhook
        /events/{tenant_id}/bus      - CloudEvent delivery (admin key)
        /tenants/{tenant_id}         - Tenant config push / inspect (admin key)
        /slack/...                   - Legacy routes (410 / 403)

Shared services are built by ``init_services()`` before the app starts
serving; the lifespan hook warms them up and shuts them down.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from slack_gateway import __version__, admin, gateway
from slack_gateway.services import (
    get_services,
    services_ready,
    start_services,
    stop_services,
)
from slack_gateway.store.tiered import STORE_ERRORS

logger = logging.getLogger(__name__)


def memory_usage() -> dict[str, Any]:
    """Peak resident set size of this process, where the OS reports it."""
    if sys.platform == "win32":
        return {}
    import resource

    max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports KiB, macOS bytes
    rss_bytes = max_rss if sys.platform == "darwin" else max_rss * 1024
    return {"max_rss_mb": round(rss_bytes / (1024 * 1024), 1)}


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    if services_ready():
        await start_services()
    yield
    await stop_services()


class GatewayServer:
    """The gateway's FastAPI application.

    Usage:
        init_services(settings)
        server = GatewayServer()
        uvicorn.run(server.app, host=..., port=...)
    """

    def __init__(
        self, title: str = "Slack Gateway", version: str = __version__
    ) -> None:
        self._app = FastAPI(title=title, version=version, lifespan=_lifespan)
        self._setup_core_routes()
        self._app.include_router(gateway.router)
        self._app.include_router(admin.router)

    @property
    def app(self) -> FastAPI:
        return self._app

    def _setup_core_routes(self) -> None:
        @self._app.get("/health")
        async def health() -> JSONResponse:
            """Liveness plus tenant/cache metrics. 503 unless status is ok."""
            if not services_ready():
                return JSONResponse(
                    {"status": "starting", "uptime": 0, "memory": memory_usage()},
                    status_code=503,
                )
            services = get_services()
            status = "ok"
            try:
                cache_size = await services.thread_store.size()
            except STORE_ERRORS:
                logger.warning("Thread store unavailable", exc_info=True)
                cache_size = None
                status = "degraded"
            body = {
                "status": status,
                "version": self._app.version,
                "uptime": round(services.uptime, 1),
                "memory": memory_usage(),
                "metrics": {
                    "tenantCount": services.tenant_store.cached_count,
                    "cacheSize": cache_size,
                    "tiers": services.tenant_store.tier_names,
                    "inFlight": services.dispatcher.pending,
                },
            }
            return JSONResponse(body, status_code=200 if status == "ok" else 503)


def create_server(**kwargs: Any) -> GatewayServer:
    """Factory for the server; services must already be initialized."""
    return GatewayServer(**kwargs)
