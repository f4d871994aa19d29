import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi_users import schemas as user_schemas
from pydantic import BaseModel, ConfigDict, Field

from .models import (
    ConnectionState,
    DataSourceKind,
    DataSourceStatus,
    EventType,
    JobStatus,
    SyncStatus,
)


# =========================
# USER SCHEMAS
# =========================
class UserRead(user_schemas.BaseUser[uuid.UUID]):
    display_name: Optional[str] = None


class UserCreate(user_schemas.BaseUserCreate):
    display_name: Optional[str] = None


class UserUpdate(user_schemas.BaseUserUpdate):
    display_name: Optional[str] = None


# =========================
# EVENT DETAILS (one variant per event_type)
# =========================
class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid")


class JournalDetails(_Details):
    text: str = Field(min_length=1, max_length=5000)
    category: str = "other"


class DocumentDetails(_Details):
    document_artifact_id: uuid.UUID
    doc_type: str
    notes: Optional[str] = None


class AmendmentDetails(_Details):
    amends_event_id: uuid.UUID
    amended_event_type: Literal["journal_entry", "document_uploaded"]
    # overriding fields; absent means "keep the original's value"
    text: Optional[str] = None
    category: Optional[str] = None
    title: Optional[str] = None
    doc_type: Optional[str] = None
    notes: Optional[str] = None
    # reason for the amendment, shown alongside it, never folded
    note: Optional[str] = None
    original_event_time: Optional[datetime] = None
    document_artifact_id: Optional[uuid.UUID] = None


class VisitSummaryDetails(_Details):
    referenced_event_ids: List[uuid.UUID] = Field(min_length=1)
    label: Optional[str] = None
    date_range_start: Optional[datetime] = None
    date_range_end: Optional[datetime] = None


class ExternalDetails(_Details):
    source: str
    resource_category: str
    provider_name: str
    is_demo: bool = False


EventDetails = Union[JournalDetails, DocumentDetails, AmendmentDetails, VisitSummaryDetails, ExternalDetails]

DETAILS_BY_TYPE: Dict[EventType, type] = {
    EventType.journal_entry: JournalDetails,
    EventType.document_uploaded: DocumentDetails,
    EventType.event_amended: AmendmentDetails,
    EventType.visit_summary: VisitSummaryDetails,
    EventType.external_event: ExternalDetails,
}

# fields an amendment may override on its target
OVERRIDABLE_FIELDS = ("text", "category", "title", "doc_type", "notes")


def decode_details(event_type: Union[str, EventType], raw: Any) -> EventDetails:
    """Decode a stored ``details`` payload into the variant for ``event_type``.

    Raises ``ValueError`` for an unknown event type and pydantic's
    ``ValidationError`` for a payload that does not fit its variant.
    """
    etype = EventType(event_type)
    model = DETAILS_BY_TYPE[etype]
    if isinstance(raw, model):
        return raw
    return model.model_validate(raw or {})


def encode_details(details: EventDetails) -> Dict[str, Any]:
    return details.model_dump(mode="json", exclude_none=True)


# =========================
# TIMELINE SCHEMAS
# =========================
class TimelineEventRead(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    event_type: str
    event_time: datetime
    title: Optional[str] = None
    summary: str
    details: Dict[str, Any] = {}
    provenance_id: uuid.UUID
    consent_snapshot_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


class TimelinePageRead(BaseModel):
    events: List[TimelineEventRead] = []
    next_cursor: Optional[str] = None


class CurrentViewRead(BaseModel):
    event: TimelineEventRead
    title: Optional[str] = None
    summary: str
    details: Dict[str, Any] = {}
    latest_amendment_id: Optional[uuid.UUID] = None
    amendment_count: int = 0


class JournalCreate(BaseModel):
    text: str = Field(min_length=1, max_length=5000)
    category: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=100)
    event_time: datetime


class AmendmentCreate(BaseModel):
    text: Optional[str] = Field(default=None, max_length=5000)
    category: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=200)
    doc_type: Optional[str] = None
    notes: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=500)


class VisitSummaryCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    summary: str = Field(min_length=1, max_length=500)
    label: Optional[str] = None
    referenced_event_ids: List[uuid.UUID] = Field(min_length=1)


class CreatedRead(BaseModel):
    id: uuid.UUID


# =========================
# DOCUMENT SCHEMAS
# =========================
class DocumentArtifactRead(BaseModel):
    id: uuid.UUID
    title: Optional[str] = None
    doc_type: Optional[str] = None
    occurred_at: Optional[datetime] = None
    content_type: str
    file_size: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DocumentUploadRead(BaseModel):
    artifact_id: uuid.UUID
    event_id: uuid.UUID


# =========================
# SOURCE / JOB / AUDIT / CONSENT SCHEMAS
# =========================
class DataSourceRead(BaseModel):
    id: uuid.UUID
    kind: DataSourceKind
    display_name: str
    provider: Optional[str] = None
    status: DataSourceStatus
    connection_state: ConnectionState
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_error_code: Optional[str] = None
    last_error_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DataSourceCreate(BaseModel):
    kind: Literal["portal", "external_api", "device"]
    display_name: str = Field(min_length=1, max_length=128)
    provider: Optional[str] = Field(default=None, max_length=128)


class JobRead(BaseModel):
    id: uuid.UUID
    job_type: str
    status: JobStatus
    idempotency_key: str
    payload: Dict[str, Any] = {}
    error_code: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditEventRead(BaseModel):
    id: uuid.UUID
    action: str
    entity_type: str
    entity_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


class ConsentSnapshotRead(BaseModel):
    id: uuid.UUID
    consent_agreement_id: uuid.UUID
    permissions: Dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True
