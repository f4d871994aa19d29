import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import (
    AmendmentCreate,
    CreatedRead,
    CurrentViewRead,
    TimelineEventRead,
    TimelinePageRead,
)
from ..services import amendments, events
from ..users import require_user_id

router = APIRouter(prefix="/api/timeline", tags=["timeline"])


@router.get("", response_model=TimelinePageRead)
async def list_timeline(
    filter: str = Query("all"),
    category: Optional[str] = Query(None),
    order: str = Query("desc"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    cursor: Optional[str] = Query(None),
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    page = await events.list_for_user(
        db, user_id,
        filter=events.TimelineFilter(kind=filter, category=category),
        order=order,
        limit=limit,
        cursor=cursor,
    )
    return TimelinePageRead(
        events=[TimelineEventRead.model_validate(e) for e in page.events],
        next_cursor=page.next_cursor,
    )


@router.get("/{event_id}", response_model=TimelineEventRead)
async def get_event(
    event_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await events.get_by_id(db, event_id, user_id)


@router.get("/{event_id}/current", response_model=CurrentViewRead)
async def get_current_view(
    event_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    view = await amendments.current_view(db, event_id, user_id)
    return CurrentViewRead(
        event=TimelineEventRead.model_validate(view.event),
        title=view.title,
        summary=view.summary,
        details=view.details,
        latest_amendment_id=view.latest_amendment_id,
        amendment_count=view.amendment_count,
    )


@router.get("/{event_id}/amendments", response_model=List[TimelineEventRead])
async def list_amendments(
    event_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    # 404 for an event that isn't the caller's, same as a missing one
    await events.get_by_id(db, event_id, user_id)
    return await amendments.find_amendments(db, event_id, user_id)


@router.post("/{event_id}/amendments", response_model=CreatedRead, status_code=status.HTTP_201_CREATED)
async def amend_event(
    event_id: uuid.UUID,
    payload: AmendmentCreate,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    changes = payload.model_dump(exclude={"note"}, exclude_none=True)
    new_id = await amendments.create_amendment(db, user_id, event_id, changes, note=payload.note)
    return CreatedRead(id=new_id)
