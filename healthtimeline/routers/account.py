import uuid
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import AuditEventRead, ConsentSnapshotRead
from ..services import audit, consent
from ..users import require_user_id

router = APIRouter(prefix="/api", tags=["account"])


@router.get("/audit", response_model=List[AuditEventRead])
async def recent_audit_events(
    limit: int = Query(50, ge=1, le=500),
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await audit.list_recent(db, user_id, limit=limit)


@router.get("/consent", response_model=List[ConsentSnapshotRead])
async def consent_history(
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await consent.list_consent_snapshots(db, user_id)
