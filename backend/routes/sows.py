"""SOW read API. Members see their own SOWs; admins see all."""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from middleware import require_actor
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sows", tags=["sows"])


@router.get("")
async def list_sows(
    request: Request,
    page: int = Query(1, ge=1),
    current_actor: dict = Depends(require_actor),
):
    result = await request.app.state.sow_service.list_sows(current_actor, page=page)
    return jsonable_encoder(result)


@router.get("/{sow_id}")
async def get_sow(
    sow_id: str,
    request: Request,
    include_audit: bool = False,
    current_actor: dict = Depends(require_actor),
):
    sow = await request.app.state.sow_service.get_sow(current_actor, sow_id, include_audit=include_audit)
    return jsonable_encoder(sow)
