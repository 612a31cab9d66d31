"""Admin routes: tenant configuration push, inspection and warm-up.

All routes require ``Authorization: Bearer <server.api_key>`` when an API
key is configured. Without one they are open, for local use.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from slack_gateway.models import TenantConfigError
from slack_gateway.services import get_services, services_ready
from slack_gateway.store import StoreError

logger = logging.getLogger(__name__)

# auto_error=False so a missing header reaches our own check
_bearer_scheme = HTTPBearer(auto_error=False)
_bearer_dependency = Depends(_bearer_scheme)


def _configured_api_key() -> str:
    if not services_ready():
        return ""
    return get_services().settings.server.api_key


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = _bearer_dependency,
) -> None:
    """FastAPI dependency enforcing the admin bearer key, if one is set."""
    api_key = _configured_api_key()
    if not api_key:
        return
    supplied = credentials.credentials if credentials is not None else ""
    if not hmac.compare_digest(supplied.encode(), api_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


router = APIRouter(
    prefix="/tenants", tags=["admin"], dependencies=[Depends(verify_api_key)]
)


@router.put("/{tenant_id}")
async def put_tenant(tenant_id: str, request: Request) -> JSONResponse:
    """Apply a configuration push. Only the fields sent are changed."""
    try:
        body: Any = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Expected a JSON object"}, status_code=400)

    services = get_services()
    try:
        config = await services.registry.apply(tenant_id, body)
    except TenantConfigError as exc:
        return JSONResponse({"error": str(exc)}, status_code=422)
    except StoreError:
        logger.exception("Could not store tenant %s", tenant_id)
        return JSONResponse({"error": "No storage tier available"}, status_code=503)
    return JSONResponse(
        {"tenant": config.redacted(), "tier": services.tenant_store.last_write_tier}
    )


@router.get("/{tenant_id}")
async def get_tenant(tenant_id: str) -> JSONResponse:
    try:
        config, tier = await get_services().tenant_store.locate(tenant_id)
    except StoreError:
        return JSONResponse({"error": "No storage tier available"}, status_code=503)
    if config is None:
        return JSONResponse({"error": "Unknown tenant"}, status_code=404)
    return JSONResponse({"tenant": config.redacted(), "tier": tier})


@router.post("/{tenant_id}/warm")
async def warm_tenant(tenant_id: str) -> JSONResponse:
    """Load a tenant through the tiers and resolve its bot identity."""
    services = get_services()
    try:
        config, tier = await services.tenant_store.locate(tenant_id)
    except StoreError:
        return JSONResponse({"error": "No storage tier available"}, status_code=503)
    if config is None:
        return JSONResponse({"error": "Unknown tenant"}, status_code=404)
    config = await services.registry.ensure_identity(config)
    return JSONResponse(
        {"ok": True, "tier": tier, "bot_user_id": config.bot_user_id}
    )


@router.delete("/{tenant_id}")
async def delete_tenant(tenant_id: str) -> JSONResponse:
    try:
        await get_services().registry.delete(tenant_id)
    except StoreError:
        return JSONResponse({"error": "No storage tier available"}, status_code=503)
    return JSONResponse({"deleted": True})
