"""Cache status and administration endpoints."""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, HTTPException, Request, Response

from presethub.config import Settings
from presethub.services.content_service import ContentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cache", tags=["cache"])


def get_content_service(request: Request) -> ContentService:
    service = getattr(request.app.state, "content_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail={"error": {"code": "NOT_READY", "message": "Content service not initialised"}})
    return service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _require_admin(request: Request) -> None:
    token = get_settings(request).cache_admin_token
    if not token:
        raise HTTPException(status_code=403, detail={"error": {"code": "FORBIDDEN", "message": "Cache administration is not configured"}})
    auth = request.headers.get("authorization", "")
    if not hmac.compare_digest(auth, f"Bearer {token}"):
        raise HTTPException(status_code=401, detail={"error": {"code": "UNAUTHORIZED", "message": "Invalid admin token"}})


@router.get("/status")
async def cache_status(request: Request, response: Response):
    """Cache statistics, upstream rate limits and warm-up state."""
    service = get_content_service(request)
    response.headers["Cache-Control"] = "no-cache"
    return {"success": True, "data": await service.stats()}


@router.post("")
async def cache_action(request: Request):
    _require_admin(request)
    service = get_content_service(request)

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail={"error": {"code": "VALIDATION_ERROR", "message": "Invalid JSON"}})

    action = body.get("action") if isinstance(body, dict) else None
    if action == "clear":
        cleared = await service.clear()
        logger.info("Caches cleared via admin endpoint")
        return {"success": True, "message": "All caches cleared", **cleared}
    if action == "warmup":
        started = service.ensure_warmup()
        return {"success": True, "started": started, "warmup": service.warmup_status()}

    raise HTTPException(status_code=400, detail={"error": {"code": "UNKNOWN_ACTION", "message": f"Unknown action: {action}"}})
