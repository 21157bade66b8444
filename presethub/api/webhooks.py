"""GitHub webhook handler for push-driven cache invalidation."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request

from presethub.api.cache import get_content_service, get_settings
from presethub.services.invalidation import invalidate_for_push, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/github")
async def github_webhook(request: Request):
    """Receive GitHub push events and invalidate cached listings for changed paths."""
    secret = get_settings(request).webhook_secret
    if not secret:
        logger.error("Webhook received but webhook_secret is not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    body = await request.body()
    signature = request.headers.get("x-hub-signature-256")
    if not verify_signature(body, signature, secret):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    event = request.headers.get("x-github-event", "")
    repo_full_name = (payload.get("repository") or {}).get("full_name")
    logger.info("Received %s event for %s", event, repo_full_name)

    if event != "push":
        return {"ok": True, "processed": False, "message": f"Ignoring event: {event}"}

    service = get_content_service(request)
    result = await invalidate_for_push(service, payload)
    return {
        "ok": True,
        "processed": True,
        "invalidated": result.invalidated,
        "paths": result.paths,
        "files_added": result.files_added,
        "files_modified": result.files_modified,
        "files_removed": result.files_removed,
        "commits": len(payload.get("commits") or []),
        "ref": payload.get("ref"),
    }


@router.get("/github")
async def webhook_status(request: Request):
    configured = bool(get_settings(request).webhook_secret)
    return {
        "status": "ok",
        "configured": configured,
        "message": "Webhook endpoint is ready" if configured else "Webhook secret not configured",
    }
