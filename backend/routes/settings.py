"""
Integration Settings API - admin only.

GET returns configured/not-configured flags, never values.
PATCH takes a partial map of managed keys: null leaves a key unchanged,
"" deletes it, any other string replaces it.
"""
from fastapi import APIRouter, Body, Depends, Query, Request
from middleware import require_admin
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
async def get_settings(request: Request, current_actor: dict = Depends(require_admin)):
    return await request.app.state.settings_service.get_settings()


@router.patch("")
async def update_settings(
    request: Request,
    updates: Dict[str, Optional[str]] = Body(...),
    current_actor: dict = Depends(require_admin),
):
    logger.info(f"Settings update by {current_actor['actor_id']}: keys={sorted(updates)}")
    return await request.app.state.settings_service.update_settings(current_actor["actor_id"], updates)


@router.post("/test")
async def test_connection(
    request: Request,
    service: str = Query(..., description="sharepoint or llm"),
    current_actor: dict = Depends(require_admin),
):
    return await request.app.state.settings_service.test_connection(service)
