"""
SOW Orchestrator - the generation pipeline state machine.

FLOW:
Rate limit (per actor)
→ Template resolved (active only)
→ Intake validated against the template schema
→ SOW record created (GENERATING)
→ LLM generation + contract validation
→ MERGING: template fetched from the blob store and merged
→ UPLOADING: merged DOCX put into the template's output folder
→ COMPLETE (SharePoint locator recorded)

Any failure after the record exists → FAILED with "<ERROR_CODE>: <message>".

RULES:
- Pre-record failures (rate limit, unknown template, bad intake) raise and
  leave no record behind
- Status writes are conditional on the expected current status, so
  COMPLETE / FAILED are never left or overwritten
- Every transition emits an audit event; audit writes are fire-and-forget
  and never block or revert a transition
- No automatic retry; a failed request is resubmitted as a new record
"""
import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from database import database
from models import AuditAction, SOWRecord, SOWStatus, TERMINAL_SOW_STATUSES
from services.config_store import ConfigStore, MissingConfiguration
from services.docx_merger import DocxMerger
from services.intake_validator import compile_schema
from services.sow_generator import SOWGenerator
from services.storage_adapter import BlobStore, GraphClient, select_blob_store
from utils.audit import emit_audit_log
from utils.errors import AppError, NotFound
from utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Max length for stored error_message
MAX_ERROR_MESSAGE_LENGTH = 1000

# Characters SharePoint rejects in file names
_UNSAFE_NAME_CHARS = re.compile(r'[\\/:*?"<>|#%]')
_WHITESPACE = re.compile(r"\s+")

MOCK_SITE_ID = "mock-site"
MOCK_DRIVE_ID = "mock-drive"


class InvalidStateTransition(AppError):
    error_code = "INVALID_STATE_TRANSITION"
    status_code = 409


@dataclass
class GenerationResult:
    """Outcome of one submission that got far enough to create a record."""
    success: bool
    sow_id: str
    request_id: str
    status: SOWStatus
    sharepoint_file_id: Optional[str] = None
    sharepoint_web_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    mock: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "sow_id": self.sow_id,
            "request_id": self.request_id,
            "status": self.status.value,
            "sharepoint_file_id": self.sharepoint_file_id,
            "sharepoint_web_url": self.sharepoint_web_url,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "mock": self.mock,
        }


def build_output_filename(client_name: str, request_id: str) -> str:
    """SOW_<client name, whitespace -> _>_<first 8 of request id>.docx"""
    name = _UNSAFE_NAME_CHARS.sub("", client_name or "").strip()
    name = _WHITESPACE.sub("_", name) or "Client"
    return f"SOW_{name}_{request_id[:8]}.docx"


def format_error_message(error: AppError) -> str:
    return f"{error.error_code}: {error.message}"[:MAX_ERROR_MESSAGE_LENGTH]


BlobStoreSelector = Callable[[ConfigStore, GraphClient], Awaitable[BlobStore]]


class SOWOrchestrator:
    """Sequences validator → generator → merger → blob store for one submission."""

    COLLECTION = "sows"

    def __init__(
        self,
        config_store: ConfigStore,
        rate_limiter: RateLimiter,
        generator: SOWGenerator,
        merger: DocxMerger,
        graph: GraphClient,
        blob_store_selector: BlobStoreSelector = select_blob_store,
    ):
        self._config_store = config_store
        self._rate_limiter = rate_limiter
        self._generator = generator
        self._merger = merger
        self._graph = graph
        self._select_blob_store = blob_store_selector

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def submit(self, actor_id: str, template_id: str, raw_input: Any) -> GenerationResult:
        """
        Run the full pipeline for one intake submission.

        Raises RateLimited, NotFound, SchemaDefinitionError or
        IntakeValidationError before any record exists. Everything after
        that is reported through the returned GenerationResult.
        """
        await self._rate_limiter.enforce(f"generate:{actor_id}")

        template = await self._load_active_template(template_id)
        validator = compile_schema(template.get("intake_schema"))
        input_data = validator.validate_or_raise(raw_input)

        record = SOWRecord(
            template_id=template_id,
            created_by=actor_id,
            input_data=input_data,
            request_id=str(uuid.uuid4()),
        )
        db = database.get_db()
        doc = record.model_dump()
        doc["status"] = record.status.value
        await db[self.COLLECTION].insert_one(doc)

        sow_id, request_id = record.sow_id, record.request_id
        logger.info(f"SOW generation started: sow_id={sow_id} request_id={request_id} template={template_id}")
        self._audit(AuditAction.SOW_GENERATION_STARTED, actor_id, sow_id, request_id, {"template_id": template_id})

        stage = "generate"
        try:
            content = await self._generator.generate(
                input_data,
                {"name": template.get("name"), "description": template.get("description")},
            )
            await self._advance(
                sow_id, SOWStatus.GENERATING, SOWStatus.MERGING,
                {"generated_content": content.model_dump()},
            )
            self._audit(AuditAction.LLM_GENERATE_SOW, actor_id, sow_id, request_id, {"template_id": template_id})

            stage = "merge"
            self._audit(AuditAction.SOW_MERGE_STARTED, actor_id, sow_id, request_id)
            blob_store = await self._select_blob_store(self._config_store, self._graph)
            site_id, drive_id = await self._resolve_library(template, blob_store)
            template_bytes = await blob_store.download(site_id, drive_id, template["sharepoint_file_id"])
            # python-docx work is CPU-bound; keep it off the event loop
            document = await asyncio.get_running_loop().run_in_executor(
                None, lambda: self._merger.merge_content(template_bytes, content)
            )

            await self._advance(sow_id, SOWStatus.MERGING, SOWStatus.UPLOADING)
            stage = "upload"
            self._audit(AuditAction.SOW_UPLOAD_STARTED, actor_id, sow_id, request_id)

            filename = build_output_filename(content.sow.client_name, request_id)
            uploaded = await blob_store.upload(site_id, drive_id, template["output_folder_id"], filename, document)
            self._audit(
                AuditAction.SHAREPOINT_UPLOAD, actor_id, sow_id, request_id,
                {"file_id": uploaded.id, "file_name": uploaded.name, "mock": blob_store.mock},
            )

            await self._advance(
                sow_id, SOWStatus.UPLOADING, SOWStatus.COMPLETE,
                {"sharepoint_file_id": uploaded.id, "sharepoint_web_url": uploaded.web_url},
            )
        except AppError as e:
            return await self._fail(record, stage, e)
        except Exception as e:
            logger.exception(f"Unexpected error in SOW pipeline: sow_id={sow_id} request_id={request_id}")
            return await self._fail(record, stage, AppError(f"Unexpected {type(e).__name__} during {stage}"))

        self._audit(
            AuditAction.SOW_GENERATED, actor_id, sow_id, request_id,
            {"template_id": template_id, "web_url": uploaded.web_url},
        )
        logger.info(f"SOW generation complete: sow_id={sow_id} request_id={request_id} url={uploaded.web_url}")
        return GenerationResult(
            success=True,
            sow_id=sow_id,
            request_id=request_id,
            status=SOWStatus.COMPLETE,
            sharepoint_file_id=uploaded.id,
            sharepoint_web_url=uploaded.web_url,
            mock=blob_store.mock,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_active_template(self, template_id: str) -> Dict[str, Any]:
        db = database.get_db()
        template = await db.templates.find_one({"template_id": template_id, "active": True}, {"_id": 0})
        if not template:
            raise NotFound(f"Template not found or inactive: {template_id}")
        return template

    async def _resolve_library(self, template: Dict[str, Any], blob_store: BlobStore) -> Tuple[str, str]:
        """Template's own site/drive ids, else the sharepoint.* settings."""
        site_id = template.get("sharepoint_site_id") or await self._config_store.get("sharepoint.siteId")
        drive_id = template.get("sharepoint_drive_id") or await self._config_store.get("sharepoint.driveId")
        if blob_store.mock:
            return site_id or MOCK_SITE_ID, drive_id or MOCK_DRIVE_ID

        missing = []
        if not site_id:
            missing.append("sharepoint.siteId")
        if not drive_id:
            missing.append("sharepoint.driveId")
        if missing:
            raise MissingConfiguration(
                f"SharePoint library is not configured. Go to Settings to add: {', '.join(missing)}",
                missing_keys=missing,
            )
        return site_id, drive_id

    async def _advance(
        self,
        sow_id: str,
        expected: SOWStatus,
        target: SOWStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        db = database.get_db()
        update = {"status": target.value, "updated_at": datetime.now(timezone.utc)}
        update.update(fields or {})
        result = await db[self.COLLECTION].update_one(
            {"sow_id": sow_id, "status": expected.value},
            {"$set": update},
        )
        if result.matched_count == 0:
            raise InvalidStateTransition(f"SOW {sow_id} is no longer {expected.value}; cannot move to {target.value}")
        logger.info(f"SOW {sow_id} status {expected.value} -> {target.value}")

    async def _fail(self, record: SOWRecord, stage: str, error: AppError) -> GenerationResult:
        """Move a non-terminal record to FAILED. A terminal record is left untouched."""
        message = format_error_message(error)
        db = database.get_db()
        result = await db[self.COLLECTION].update_one(
            {"sow_id": record.sow_id, "status": {"$nin": list(TERMINAL_SOW_STATUSES)}},
            {"$set": {
                "status": SOWStatus.FAILED.value,
                "error_message": message,
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        if result.matched_count == 0:
            logger.warning(f"SOW {record.sow_id} already terminal; failure at {stage} not recorded")
        logger.error(
            f"SOW generation failed: sow_id={record.sow_id} request_id={record.request_id} "
            f"stage={stage} error={error.error_code}"
        )
        self._audit(
            AuditAction.SOW_GENERATION_FAILED, record.created_by, record.sow_id, record.request_id,
            {"stage": stage, "error_code": error.error_code},
        )
        return GenerationResult(
            success=False,
            sow_id=record.sow_id,
            request_id=record.request_id,
            status=SOWStatus.FAILED,
            error_code=error.error_code,
            error_message=message,
        )

    def _audit(
        self,
        action: AuditAction,
        actor_id: str,
        sow_id: str,
        request_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        emit_audit_log(
            action,
            actor_id=actor_id,
            resource_type="sow",
            resource_id=sow_id,
            metadata=metadata,
            request_id=request_id,
        )
