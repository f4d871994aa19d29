# services/documents.py
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.access import fetch_owned
from healthtimeline.background import run_sync
from healthtimeline.blobstore import BlobNotFound, BlobStore, UserBucketsStrategy
from healthtimeline.errors import NotFoundError, StorageError, ValidationError
from healthtimeline.models import DataSourceKind, DocumentArtifact, EventType, ProvenanceMethod
from healthtimeline.services import audit
from healthtimeline.services.consent import get_or_create_default_consent_snapshot
from healthtimeline.services.events import NewTimelineEvent, append
from healthtimeline.services.provenance import create_provenance
from healthtimeline.services.sources import get_or_create_data_source
from healthtimeline.services.store import commit, flush
from healthtimeline.settings.config import settings
from healthtimeline.utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

ACCEPTED_CONTENT_TYPES = frozenset({
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/heic",
})

DOC_TYPE_LABELS = {
    "lab": "Lab Results",
    "imaging": "Imaging",
    "visit_summary": "Visit Summary",
    "medication": "Medication",
    "insurance": "Insurance",
    "other": "Other",
}

UPLOAD_SOURCE_NAME = "User Upload"

_DISPOSITION_UNSAFE = re.compile(r"[^\w\-. ]")

_paths = UserBucketsStrategy()


def doc_type_label(doc_type: Optional[str]) -> Optional[str]:
    if not doc_type:
        return None
    return DOC_TYPE_LABELS.get(doc_type, doc_type)


@dataclass
class DocumentUpload:
    artifact_id: uuid.UUID
    event_id: uuid.UUID


@dataclass
class DocumentDownload:
    data: bytes
    content_type: str
    filename: str

    @property
    def content_disposition(self) -> str:
        return f'attachment; filename="{self.filename}"'


def _validate_upload(data: bytes, content_type: str, title: str, doc_type: str) -> None:
    if content_type not in ACCEPTED_CONTENT_TYPES:
        raise ValidationError("unsupported document type", code="unsupported_content_type")
    if not data:
        raise ValidationError("document is empty", code="empty_document")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError("document is too large", code="document_too_large")
    if not (title or "").strip() or len(title) > 200:
        raise ValidationError("title must be 1-200 characters", code="invalid_title")
    if doc_type not in DOC_TYPE_LABELS:
        raise ValidationError("unknown document type", code="invalid_doc_type")


async def _discard_blob(blobs: BlobStore, path: str) -> None:
    try:
        await run_sync(blobs.delete, path)
        logger.info("cleaned up orphaned blob after failed upload")
    except Exception as exc:  # noqa: BLE001
        logger.warning("orphaned blob cleanup failed: %s", type(exc).__name__)


async def upload_document(
    db: AsyncSession,
    blobs: BlobStore,
    user_id: uuid.UUID,
    data: bytes,
    filename: str,
    content_type: str,
    title: str,
    doc_type: str,
    occurred_at: Union[datetime, str],
    notes: Optional[str] = None,
) -> DocumentUpload:
    """Store the file, then its artifact row and ``document_uploaded`` event.

    Anything failing after the file is stored rolls the rows back and
    removes the file again (best effort).
    """
    _validate_upload(data, content_type, title, doc_type)
    occurred_at = parse_timestamp(occurred_at, field="occurred_at")

    path = _paths.document_path(user_id, filename, now=utcnow())
    try:
        await run_sync(blobs.put, path, data, content_type)
    except (OSError, ValueError) as exc:
        logger.error("blob put failed for user %s: %s", user_id, type(exc).__name__)
        raise StorageError("could not store document") from exc

    try:
        source_id = await get_or_create_data_source(db, user_id, DataSourceKind.upload, UPLOAD_SOURCE_NAME)
        consent_id = await get_or_create_default_consent_snapshot(db, user_id)
        prov_id = await create_provenance(db, source_id, ProvenanceMethod.upload, {
            "doc_type": doc_type,
            "mime": content_type,
            "size_bytes": len(data),
        })
        artifact = DocumentArtifact(
            user_id=user_id,
            title=title.strip(),
            doc_type=doc_type,
            occurred_at=occurred_at,
            storage_path=path,
            content_type=content_type,
            file_size=len(data),
            original_filename=filename,
            provenance_id=prov_id,
        )
        db.add(artifact)
        await flush(db, "document artifact")
        artifact_id = artifact.id
        event_id = await append(db, NewTimelineEvent(
            user_id=user_id,
            event_type=EventType.document_uploaded,
            event_time=occurred_at,
            title=title.strip(),
            summary=f"Uploaded {doc_type_label(doc_type)} document",
            details={"document_artifact_id": artifact_id, "doc_type": doc_type, "notes": notes or None},
            provenance_id=prov_id,
            consent_snapshot_id=consent_id,
        ))
        await commit(db, "document upload")
    except Exception:
        await db.rollback()
        await _discard_blob(blobs, path)
        raise

    logger.info("document %s uploaded for user %s (event %s)", artifact_id, user_id, event_id)
    await audit.record(db, user_id, "document_uploaded", "document_artifact", artifact_id)
    return DocumentUpload(artifact_id=artifact_id, event_id=event_id)


async def get_artifact(db: AsyncSession, artifact_id: uuid.UUID, user_id: uuid.UUID) -> DocumentArtifact:
    artifact = await fetch_owned(db, DocumentArtifact, artifact_id, user_id)
    if artifact is None:
        raise NotFoundError(f"document {artifact_id} not found")
    return artifact


async def open_document(db: AsyncSession, blobs: BlobStore, user_id: uuid.UUID, artifact_id: uuid.UUID) -> DocumentDownload:
    """Ownership is checked before storage is touched."""
    artifact = await get_artifact(db, artifact_id, user_id)
    path = artifact.storage_path
    content_type = artifact.content_type or "application/octet-stream"
    filename = _DISPOSITION_UNSAFE.sub("_", artifact.original_filename or "") or "document"
    try:
        data = await run_sync(blobs.get, path)
    except BlobNotFound:
        logger.warning("blob missing for document %s", artifact_id)
        raise NotFoundError(f"document {artifact_id} not found") from None
    except (OSError, ValueError) as exc:
        logger.error("blob read failed for document %s: %s", artifact_id, type(exc).__name__)
        raise StorageError("could not read document") from exc
    await audit.record(db, user_id, "document_downloaded", "document_artifact", artifact_id)
    return DocumentDownload(data=data, content_type=content_type, filename=filename)
