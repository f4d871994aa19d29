import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..blobstore import BlobStore, get_blob_store
from ..database import get_db
from ..errors import ValidationError
from ..schemas import DocumentArtifactRead, DocumentUploadRead
from ..services import documents
from ..settings.config import settings
from ..users import require_user_id

router = APIRouter(prefix="/api/documents", tags=["documents"])


@router.post("", response_model=DocumentUploadRead, status_code=status.HTTP_201_CREATED)
async def upload_document(
    file: UploadFile = File(...),
    title: str = Form(...),
    doc_type: str = Form(...),
    occurred_at: str = Form(...),
    notes: Optional[str] = Form(None),
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    # read one byte past the limit so oversize files are caught without buffering them whole
    data = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError("document is too large", code="document_too_large")
    result = await documents.upload_document(
        db, blobs, user_id,
        data=data,
        filename=file.filename or "document",
        content_type=(file.content_type or "").lower(),
        title=title,
        doc_type=doc_type,
        occurred_at=occurred_at,
        notes=notes,
    )
    return DocumentUploadRead(artifact_id=result.artifact_id, event_id=result.event_id)


@router.get("/{artifact_id}", response_model=DocumentArtifactRead)
async def get_document(
    artifact_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await documents.get_artifact(db, artifact_id, user_id)


@router.get("/{artifact_id}/download")
async def download_document(
    artifact_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
    blobs: BlobStore = Depends(get_blob_store),
):
    doc = await documents.open_document(db, blobs, user_id, artifact_id)
    return Response(
        content=doc.data,
        media_type=doc.content_type,
        headers={"Content-Disposition": doc.content_disposition},
    )
