"""
SOW Generation API - runs the full pipeline for one intake submission.

The request returns only after the SOW reaches COMPLETE or FAILED.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from middleware import require_actor
from models import GenerateRequest
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["generation"])


@router.post("/generate")
async def generate_sow(
    body: GenerateRequest,
    request: Request,
    current_actor: dict = Depends(require_actor),
):
    """
    Generate a SOW from a template and intake answers.

    Rate limit, unknown template and intake errors are returned before any
    SOW record exists. Later failures return the FAILED record's id and
    error so the caller can show it immediately.
    """
    orchestrator = request.app.state.orchestrator
    logger.info(f"SOW generation requested by {current_actor['actor_id']} for template {body.template_id}")

    result = await orchestrator.submit(current_actor["actor_id"], body.template_id, body.intake_data)
    return JSONResponse(
        status_code=200 if result.success else 502,
        content=result.to_dict(),
    )
