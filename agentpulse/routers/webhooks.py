"""Webhook subscription management."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException, Request

from agentpulse.date_utils import now_ms
from agentpulse.models import WebhookCreate, WebhookUpdate
from agentpulse.runtime import get_runtime
from agentpulse.services.webhooks import validate_webhook_url

webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _public(webhook: dict) -> dict:
    """Never echo the secret back; report whether one is set."""
    out = {k: v for k, v in webhook.items() if k != "secret"}
    out["has_secret"] = bool(webhook.get("secret"))
    return out


def _check_url(url: str) -> None:
    error = validate_webhook_url(url)
    if error:
        raise HTTPException(status_code=400, detail=error)


@webhooks_router.get("")
async def list_webhooks(request: Request):
    hooks = await get_runtime(request).webhooks.webhooks.list_all()
    return [_public(h) for h in hooks]


@webhooks_router.post("", status_code=201)
async def create_webhook(payload: WebhookCreate, request: Request):
    _check_url(payload.url)
    repo = get_runtime(request).webhooks.webhooks
    webhook = {"id": uuid.uuid4().hex, **payload.model_dump()}
    await repo.create(webhook, now_ms())
    return _public(await repo.get(webhook["id"]))


@webhooks_router.put("/{webhook_id}")
async def update_webhook(webhook_id: str, payload: WebhookUpdate, request: Request):
    repo = get_runtime(request).webhooks.webhooks
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("url") is not None:
        _check_url(changes["url"])
    if not await repo.update(webhook_id, changes, now_ms()):
        raise HTTPException(status_code=404, detail=f"Webhook not found: {webhook_id}")
    return _public(await repo.get(webhook_id))


@webhooks_router.delete("/{webhook_id}")
async def delete_webhook(webhook_id: str, request: Request):
    if not await get_runtime(request).webhooks.webhooks.delete(webhook_id):
        raise HTTPException(status_code=404, detail=f"Webhook not found: {webhook_id}")
    return {"deleted": webhook_id}


@webhooks_router.post("/{webhook_id}/test")
async def test_webhook(webhook_id: str, request: Request):
    dispatcher = get_runtime(request).webhooks
    webhook = await dispatcher.webhooks.get(webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail=f"Webhook not found: {webhook_id}")
    return await dispatcher.test_webhook(webhook)
