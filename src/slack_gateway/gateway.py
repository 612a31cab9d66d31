"""Webhook routes.

Request flow for ``POST /events/{tenant_id}``:

    read raw body -> parse JSON (400) -> URL challenge (plain text)
    -> tenant lookup (503 on miss) -> signature check (401)
    -> drop self/bot/non-content events -> dispatch -> {"ok": true}

The response never waits for generation; the event is handed to the
dispatcher as a detached task.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from slack_gateway import conventions
from slack_gateway.admin import verify_api_key
from slack_gateway.events import should_ignore
from slack_gateway.models import CloudEvent, parse_event
from slack_gateway.services import get_services
from slack_gateway.signature import verify
from slack_gateway.store import StoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

RETRY_AFTER_SECONDS = "5"


def _parse_body(raw: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _challenge(payload: dict[str, Any]) -> Response | None:
    if payload.get("type") != "url_verification":
        return None
    return PlainTextResponse(str(payload.get("challenge", "")))


def _not_configured(tenant_id: str) -> JSONResponse:
    return JSONResponse(
        {
            "error": "Tenant configuration not available on this replica",
            "tenant_id": tenant_id,
            "retryable": True,
            "hint": (
                f"Retry shortly, or warm the cache with POST /tenants/{tenant_id}/warm"
            ),
        },
        status_code=503,
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )


@router.post("/events/{tenant_id}")
async def receive_event(tenant_id: str, request: Request) -> Response:
    raw = await request.body()
    payload = _parse_body(raw)
    if payload is None:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    challenge = _challenge(payload)
    if challenge is not None:
        return challenge

    services = get_services()
    try:
        tenant = await services.registry.load(tenant_id)
    except StoreError:
        logger.exception("Tenant lookup failed for %s", tenant_id)
        tenant = None
    if tenant is None:
        logger.warning("Event for unknown tenant %s", tenant_id)
        return _not_configured(tenant_id)

    if not verify(
        raw,
        request.headers.get(conventions.SIGNATURE_HEADER),
        request.headers.get(conventions.TIMESTAMP_HEADER),
        tenant.signing_secret,
    ):
        logger.warning("Invalid signature for tenant %s", tenant_id)
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    event = parse_event(payload)
    if should_ignore(event, services.registry.known_bot_user_id(tenant)):
        return JSONResponse({"ok": True})

    services.dispatcher.dispatch(event, tenant)
    return JSONResponse({"ok": True})


@router.post("/events/{tenant_id}/bus", dependencies=[Depends(verify_api_key)])
async def receive_bus_events(tenant_id: str, request: Request) -> JSONResponse:
    """Deliver CloudEvents (e.g. completed generations) for a tenant."""
    payload: Any = None
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if isinstance(payload, dict) and isinstance(payload.get("events"), list):
        payload = payload["events"]
    items = payload if isinstance(payload, list) else [payload]

    services = get_services()
    try:
        tenant = await services.registry.load(tenant_id)
    except StoreError:
        logger.exception("Tenant lookup failed for %s", tenant_id)
        tenant = None
    if tenant is None:
        return _not_configured(tenant_id)

    results: list[dict[str, Any]] = []
    for item in items:
        try:
            event = CloudEvent.from_dict(item)
        except (ValueError, TypeError, AttributeError) as exc:
            results.append({"id": None, "handled": False, "detail": str(exc)})
            continue
        result = await services.subscriber.handle(event, tenant)
        results.append(
            {"id": result.event_id, "handled": result.handled, "detail": result.detail}
        )
    return JSONResponse({"results": results})


# --- Legacy routes ---


@router.post("/slack/events")
async def legacy_events(request: Request) -> Response:
    """Team-keyed route from before per-tenant URLs. Only the challenge works."""
    payload = _parse_body(await request.body())
    if payload is None:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    challenge = _challenge(payload)
    if challenge is not None:
        return challenge
    return JSONResponse(
        {
            "error": (
                "This route was removed; point the Slack app at /events/{tenant_id}"
            ),
            "route": "/events/{tenant_id}",
        },
        status_code=410,
    )


@router.post("/slack/commands")
@router.post("/slack/interactive")
async def legacy_unsupported() -> JSONResponse:
    return JSONResponse(
        {"error": "Slash commands and interactivity are not supported"},
        status_code=403,
    )
