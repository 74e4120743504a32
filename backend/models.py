from pydantic import BaseModel, ConfigDict, Field, StrictStr
from typing import Optional, Dict, Any, List, Literal, Union
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"

class SOWStatus(str, Enum):
    GENERATING = "GENERATING"
    MERGING = "MERGING"
    UPLOADING = "UPLOADING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

TERMINAL_SOW_STATUSES = (SOWStatus.COMPLETE.value, SOWStatus.FAILED.value)

class AuditAction(str, Enum):
    # Generation pipeline
    SOW_GENERATION_STARTED = "SOW_GENERATION_STARTED"
    LLM_GENERATE_SOW = "LLM_GENERATE_SOW"
    SOW_MERGE_STARTED = "SOW_MERGE_STARTED"
    SOW_UPLOAD_STARTED = "SOW_UPLOAD_STARTED"
    SHAREPOINT_UPLOAD = "SHAREPOINT_UPLOAD"
    SOW_GENERATED = "SOW_GENERATED"
    SOW_GENERATION_FAILED = "SOW_GENERATION_FAILED"

    # Admin
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    TEMPLATE_CREATED = "TEMPLATE_CREATED"
    TEMPLATE_DEACTIVATED = "TEMPLATE_DEACTIVATED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# RECORDS
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

class TemplateRecord(BaseModel):
    """Template entity: a DOCX in SharePoint plus its intake schema."""
    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    intake_schema: Dict[str, Any]
    sharepoint_site_id: Optional[str] = None
    sharepoint_drive_id: Optional[str] = None
    sharepoint_file_id: str
    output_folder_id: str
    active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

class SOWRecord(BaseModel):
    """Generation request. input_data and request_id never change after creation."""
    model_config = ConfigDict(extra="ignore")

    sow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    created_by: str
    input_data: Dict[str, Any]
    generated_content: Optional[Dict[str, Any]] = None
    status: SOWStatus = SOWStatus.GENERATING
    error_message: Optional[str] = None
    sharepoint_file_id: Optional[str] = None
    sharepoint_web_url: Optional[str] = None
    request_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ============================================================================
# GENERATED CONTENT CONTRACT (LLM output)
# ============================================================================

class _StrictContent(BaseModel):
    model_config = ConfigDict(strict=True)

class Deliverable(_StrictContent):
    name: StrictStr
    description: StrictStr
    acceptance_criteria: StrictStr

class TimelineEntry(_StrictContent):
    milestone: StrictStr
    eta: StrictStr

class RoleResponsibility(_StrictContent):
    role: StrictStr
    responsibilities: List[StrictStr]

class Risk(_StrictContent):
    risk: StrictStr
    mitigation: StrictStr

class Pricing(_StrictContent):
    model: Literal["fixed", "tm", "retainer"]
    amount: Union[int, float]
    currency: StrictStr
    notes: StrictStr

class SOWContent(_StrictContent):
    project_title: StrictStr
    client_name: StrictStr
    overview: StrictStr
    objectives: List[StrictStr]
    scope_included: List[StrictStr]
    scope_excluded: List[StrictStr]
    deliverables: List[Deliverable]
    timeline: List[TimelineEntry]
    roles_responsibilities: List[RoleResponsibility]
    assumptions: List[StrictStr]
    risks: List[Risk]
    pricing: Pricing
    terms: List[StrictStr]

class GeneratedContent(_StrictContent):
    sow: SOWContent
    # Flat placeholder -> rendered string map supplied by the model
    doc_merge_map: Dict[StrictStr, StrictStr]


# ============================================================================
# REQUEST BODIES
# ============================================================================

class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    intake_schema: Dict[str, Any]
    sharepoint_site_id: Optional[str] = None
    sharepoint_drive_id: Optional[str] = None
    sharepoint_file_id: str = Field(min_length=1)
    output_folder_id: str = Field(min_length=1)

class GenerateRequest(BaseModel):
    template_id: str = Field(min_length=1)
    intake_data: Dict[str, Any]
