import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import CreatedRead, JournalCreate, VisitSummaryCreate
from ..services.journal import create_journal_entry
from ..services.visits import create_visit_summary
from ..users import require_user_id

router = APIRouter(prefix="/api", tags=["entries"])


@router.post("/journal", response_model=CreatedRead, status_code=status.HTTP_201_CREATED)
async def post_journal_entry(
    payload: JournalCreate,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    event_id = await create_journal_entry(
        db, user_id,
        text=payload.text,
        category=payload.category,
        title=payload.title,
        event_time=payload.event_time,
    )
    return CreatedRead(id=event_id)


@router.post("/visit-summaries", response_model=CreatedRead, status_code=status.HTTP_201_CREATED)
async def post_visit_summary(
    payload: VisitSummaryCreate,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    event_id = await create_visit_summary(
        db, user_id,
        title=payload.title,
        summary=payload.summary,
        label=payload.label,
        referenced_event_ids=payload.referenced_event_ids,
    )
    return CreatedRead(id=event_id)
