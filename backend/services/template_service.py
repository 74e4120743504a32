"""
Template Service - SOW templates (SharePoint DOCX locator + intake schema).

The intake schema is compiled when a template is created, so a bad schema
is rejected up front instead of failing every submission. Schemas are
immutable after creation; to change one, create a new template and
deactivate the old one.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from database import database
from models import AuditAction, TemplateCreate, TemplateRecord
from services.intake_validator import compile_schema
from utils.audit import create_audit_log
from utils.errors import NotFound

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


class TemplateService:
    COLLECTION = "templates"

    async def create_template(self, actor_id: str, payload: TemplateCreate) -> Dict[str, Any]:
        compile_schema(payload.intake_schema)

        record = TemplateRecord(**payload.model_dump(), created_by=actor_id)
        doc = record.model_dump()
        db = database.get_db()
        await db[self.COLLECTION].insert_one(doc)
        doc.pop("_id", None)

        await create_audit_log(
            action=AuditAction.TEMPLATE_CREATED,
            actor_id=actor_id,
            resource_type="template",
            resource_id=record.template_id,
            metadata={"name": record.name},
        )
        logger.info(f"Template created: {record.template_id} ({record.name})")
        return doc

    async def get_template(self, template_id: str) -> Dict[str, Any]:
        db = database.get_db()
        template = await db[self.COLLECTION].find_one({"template_id": template_id}, {"_id": 0})
        if not template:
            raise NotFound(f"Template not found: {template_id}")
        return template

    async def get_active_template(self, template_id: str) -> Dict[str, Any]:
        template = await self.get_template(template_id)
        if not template.get("active"):
            raise NotFound(f"Template not found or inactive: {template_id}")
        return template

    async def list_templates(
        self,
        include_inactive: bool = False,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> Dict[str, Any]:
        db = database.get_db()
        query = {} if include_inactive else {"active": True}
        page = max(1, page)

        cursor = db[self.COLLECTION].find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * per_page).limit(per_page)
        templates = await cursor.to_list(length=per_page)
        total = await db[self.COLLECTION].count_documents(query)
        return {"templates": templates, "total": total, "page": page, "per_page": per_page}

    async def deactivate_template(self, actor_id: str, template_id: str) -> None:
        """Soft delete. Existing SOW records keep their template_id."""
        db = database.get_db()
        result = await db[self.COLLECTION].update_one(
            {"template_id": template_id},
            {"$set": {"active": False, "deactivated_at": datetime.now(timezone.utc)}},
        )
        if result.matched_count == 0:
            raise NotFound(f"Template not found: {template_id}")

        await create_audit_log(
            action=AuditAction.TEMPLATE_DEACTIVATED,
            actor_id=actor_id,
            resource_type="template",
            resource_id=template_id,
        )
        logger.info(f"Template deactivated: {template_id}")

    async def describe_intake_form(self, template_id: str) -> Dict[str, Any]:
        """Ordered field descriptors for rendering the template's intake form."""
        template = await self.get_active_template(template_id)
        validator = compile_schema(template["intake_schema"])
        fields: List[Dict[str, Any]] = validator.describe_fields()
        return {
            "template_id": template_id,
            "name": template["name"],
            "title": template["intake_schema"].get("title"),
            "fields": fields,
        }
