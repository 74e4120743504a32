"""SOW Templates API - listing for everyone, authoring for admins."""
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from middleware import require_actor, require_admin
from models import TemplateCreate
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/templates", tags=["templates"])


@router.get("")
async def list_templates(
    request: Request,
    page: int = Query(1, ge=1),
    include_inactive: bool = False,
    current_actor: dict = Depends(require_actor),
):
    # Only admins can see deactivated templates
    include_inactive = include_inactive and current_actor["role"] == "ADMIN"
    result = await request.app.state.template_service.list_templates(
        include_inactive=include_inactive, page=page
    )
    return jsonable_encoder(result)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    body: TemplateCreate,
    request: Request,
    current_actor: dict = Depends(require_admin),
):
    template = await request.app.state.template_service.create_template(current_actor["actor_id"], body)
    return jsonable_encoder(template)


@router.get("/{template_id}")
async def get_template(
    template_id: str,
    request: Request,
    current_actor: dict = Depends(require_actor),
):
    template = await request.app.state.template_service.get_template(template_id)
    return jsonable_encoder(template)


@router.get("/{template_id}/form")
async def get_intake_form(
    template_id: str,
    request: Request,
    current_actor: dict = Depends(require_actor),
):
    """Ordered intake fields for rendering the generation form."""
    return await request.app.state.template_service.describe_intake_form(template_id)


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: str,
    request: Request,
    current_actor: dict = Depends(require_admin),
):
    """Soft delete: the template is deactivated, never removed."""
    await request.app.state.template_service.deactivate_template(current_actor["actor_id"], template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
