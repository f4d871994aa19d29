import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..background import spawn
from ..database import get_db, get_session_maker
from ..models import JobStatus
from ..schemas import DataSourceCreate, DataSourceRead, JobRead
from ..services import jobs, sources
from ..users import require_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sources"])


@router.get("/sources", response_model=List[DataSourceRead])
async def list_sources(
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await sources.list_sources(db, user_id)


@router.post("/sources", response_model=DataSourceRead, status_code=status.HTTP_201_CREATED)
async def add_source(
    payload: DataSourceCreate,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await sources.register_external_source(
        db, user_id, payload.kind, payload.display_name, provider=payload.provider
    )


@router.get("/sources/{source_id}", response_model=DataSourceRead)
async def get_source(
    source_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await sources.get_source(db, source_id, user_id)


@router.post("/sources/{source_id}/{action}", response_model=JobRead, status_code=status.HTTP_202_ACCEPTED)
async def request_source_action(
    source_id: uuid.UUID,
    action: str,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    job = await sources.request_sync(db, user_id, source_id, action)
    if job.status == JobStatus.pending:
        spawn(sources.run_sync_job(session_maker, user_id, job.id), name="source_sync")
    else:
        logger.info("job %s already %s; not rescheduled", job.id, job.status.value)
    return job


@router.get("/jobs/{job_id}", response_model=JobRead)
async def get_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await jobs.get_job(db, job_id, user_id)
