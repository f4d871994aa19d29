import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Boolean, ForeignKey, Text, DateTime, BigInteger, JSON,
    UniqueConstraint, Index, Uuid, event,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class DataSourceKind(str, enum.Enum):
    manual = "manual"
    upload = "upload"
    portal = "portal"
    external_api = "external_api"
    device = "device"


INTERNAL_KINDS = frozenset({DataSourceKind.manual, DataSourceKind.upload})


class DataSourceStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    pending = "pending"


class ConnectionState(str, enum.Enum):
    disconnected = "disconnected"
    connected = "connected"
    error = "error"


class SyncStatus(str, enum.Enum):
    never = "never"
    ok = "ok"
    error = "error"


class ProvenanceMethod(str, enum.Enum):
    manual_entry = "manual_entry"
    upload = "upload"
    portal_import = "portal_import"
    manual_amendment = "manual_amendment"


class EventType(str, enum.Enum):
    journal_entry = "journal_entry"
    document_uploaded = "document_uploaded"
    event_amended = "event_amended"
    visit_summary = "visit_summary"
    external_event = "external_event"


AMENDABLE_EVENT_TYPES = frozenset({EventType.journal_entry, EventType.document_uploaded})


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    complete = "complete"
    failed = "failed"


# ---------------------------
# USER MODEL
# ---------------------------
class User(Base):
    __tablename__ = "user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(320), unique=True, index=True, nullable=False)
    hashed_password = Column(String(1024), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_superuser = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    display_name = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------
# DATA SOURCES
# ---------------------------
class DataSource(Base):
    __tablename__ = "data_source"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    kind = Column(SAEnum(DataSourceKind, name="data_source_kind"), nullable=False)
    display_name = Column(String(128), nullable=False)
    provider = Column(String(128), nullable=True)
    status = Column(SAEnum(DataSourceStatus, name="data_source_status"), default=DataSourceStatus.pending, nullable=False)

    # connection fields are the one piece of overwritable state; only
    # services.sources touches them
    connection_state = Column(
        SAEnum(ConnectionState, name="connection_state"),
        default=ConnectionState.disconnected,
        nullable=False,
    )
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(SAEnum(SyncStatus, name="sync_status"), nullable=True)
    last_error_code = Column(String(64), nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "display_name", name="uq_data_source_user_kind_name"),
    )


# ---------------------------
# PROVENANCE / CONSENT
# ---------------------------
class Provenance(Base):
    __tablename__ = "provenance"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    data_source_id = Column(Uuid, ForeignKey("data_source.id", ondelete="RESTRICT"), index=True, nullable=False)
    method = Column(SAEnum(ProvenanceMethod, name="provenance_method"), nullable=False)
    captured_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    # non-identifying context only (ids, mime types, sizes); never health text
    meta = Column("metadata", JSONType, default=dict, nullable=False)

    data_source = relationship("DataSource", lazy="joined")


class ConsentAgreement(Base):
    __tablename__ = "consent_agreement"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    scope = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "scope", name="uq_consent_agreement_user_scope"),)


class ConsentSnapshot(Base):
    __tablename__ = "consent_snapshot"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    consent_agreement_id = Column(
        Uuid, ForeignKey("consent_agreement.id", ondelete="RESTRICT"), index=True, nullable=False
    )
    permissions = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    agreement = relationship("ConsentAgreement", lazy="joined")

    __table_args__ = (
        Index("ix_consent_snapshot_agreement_created", "consent_agreement_id", "created_at"),
    )


# ---------------------------
# TIMELINE
# ---------------------------
class TimelineEvent(Base):
    __tablename__ = "timeline_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    event_type = Column(String(32), nullable=False)
    event_time = Column(DateTime(timezone=True), nullable=False)
    title = Column(Text, nullable=True)
    summary = Column(Text, nullable=False)
    details = Column(JSONType, default=dict, nullable=False)
    provenance_id = Column(Uuid, ForeignKey("provenance.id", ondelete="RESTRICT"), index=True, nullable=False)
    consent_snapshot_id = Column(
        Uuid, ForeignKey("consent_snapshot.id", ondelete="RESTRICT"), index=True, nullable=False
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_timeline_event_user_time", "user_id", "event_time", "id"),
        Index("ix_timeline_event_user_type_created", "user_id", "event_type", "created_at"),
    )

    def __repr__(self):
        return f"<TimelineEvent {self.id} {self.event_type}>"


class DocumentArtifact(Base):
    __tablename__ = "document_artifact"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(Text, nullable=True)
    doc_type = Column(String(32), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    storage_path = Column(Text, nullable=False)
    content_type = Column(String(128), nullable=False)
    file_size = Column(BigInteger, nullable=True)
    original_filename = Column(Text, nullable=True)
    provenance_id = Column(Uuid, ForeignKey("provenance.id", ondelete="RESTRICT"), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------
# AUDIT / JOBS
# ---------------------------
class AuditEvent(Base):
    __tablename__ = "audit_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(Uuid, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Job(Base):
    __tablename__ = "job"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    job_type = Column(String(64), nullable=False)
    status = Column(SAEnum(JobStatus, name="job_status"), default=JobStatus.pending, nullable=False)
    idempotency_key = Column(String(200), nullable=False)
    payload = Column(JSONType, default=dict, nullable=False)
    error_code = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "idempotency_key", name="uq_job_user_idempotency"),)


# ---------------------------
# APPEND-ONLY GUARD
# ---------------------------
APPEND_ONLY_MODELS = (TimelineEvent, ConsentSnapshot, AuditEvent, Provenance)


@event.listens_for(Session, "before_flush")
def _reject_append_only_mutation(session, flush_context, instances):
    from .errors import AppendOnlyViolation

    for obj in session.deleted:
        if isinstance(obj, APPEND_ONLY_MODELS):
            raise AppendOnlyViolation(f"{type(obj).__name__} rows cannot be deleted")
    for obj in session.dirty:
        if isinstance(obj, APPEND_ONLY_MODELS) and session.is_modified(obj, include_collections=False):
            raise AppendOnlyViolation(f"{type(obj).__name__} rows cannot be updated")
