from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from models import UserRole

logger = logging.getLogger(__name__)

# Set by the authenticating reverse proxy / identity layer in front of this API
ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"

async def get_current_actor(request: Request) -> Optional[dict]:
    """Read the authenticated actor from the identity headers."""
    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    if not actor_id:
        return None

    role = (request.headers.get(ACTOR_ROLE_HEADER) or UserRole.MEMBER.value).strip().upper()
    if role not in {r.value for r in UserRole}:
        logger.warning(f"Unknown actor role {role!r} for {actor_id}; treating as MEMBER")
        role = UserRole.MEMBER.value

    return {"actor_id": actor_id, "role": role}

async def require_actor(request: Request) -> dict:
    """Require an authenticated actor."""
    actor = await get_current_actor(request)
    if not actor:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return actor

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    actor = await require_actor(request)
    if actor["role"] != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden - admin only"
        )
    return actor
