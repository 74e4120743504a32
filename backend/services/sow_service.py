"""SOW read views. Members see their own SOWs; admins see all."""
import logging
from typing import Any, Dict

from database import database
from models import UserRole
from utils.audit import get_audit_logs_for_resource
from utils.errors import Forbidden, NotFound

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


def _is_admin(actor: Dict[str, Any]) -> bool:
    return actor.get("role") == UserRole.ADMIN.value


class SOWService:
    COLLECTION = "sows"

    async def get_sow(self, actor: Dict[str, Any], sow_id: str, include_audit: bool = False) -> Dict[str, Any]:
        db = database.get_db()
        sow = await db[self.COLLECTION].find_one({"sow_id": sow_id}, {"_id": 0})
        if not sow:
            raise NotFound(f"SOW not found: {sow_id}")

        if not _is_admin(actor) and sow.get("created_by") != actor.get("actor_id"):
            logger.warning(f"SOW access denied: sow_id={sow_id} actor={actor.get('actor_id')}")
            raise Forbidden("You do not have access to this SOW")

        if include_audit:
            sow["audit_trail"] = await get_audit_logs_for_resource("sow", sow_id)
        return sow

    async def list_sows(
        self,
        actor: Dict[str, Any],
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        """Newest first; input_data and generated_content are left out of the listing."""
        db = database.get_db()
        query = {} if _is_admin(actor) else {"created_by": actor.get("actor_id")}
        page = max(1, page)
        projection = {"_id": 0, "input_data": 0, "generated_content": 0}

        cursor = db[self.COLLECTION].find(query, projection).sort("created_at", -1).skip((page - 1) * per_page).limit(per_page)
        sows = await cursor.to_list(length=per_page)
        total = await db[self.COLLECTION].count_documents(query)
        return {"sows": sows, "total": total, "page": page, "per_page": per_page}
