# services/jobs.py
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.access import fetch_owned, owned
from healthtimeline.errors import ConflictError, InvalidTransition, NotFoundError, StorageError
from healthtimeline.models import Job, JobStatus
from healthtimeline.services.store import commit, insert_unique

logger = logging.getLogger(__name__)

# pending -> running -> {complete, failed}
_NEXT = {
    JobStatus.running: {JobStatus.pending},
    JobStatus.complete: {JobStatus.running},
    JobStatus.failed: {JobStatus.pending, JobStatus.running},
}


async def _find_by_key(db: AsyncSession, user_id: uuid.UUID, idempotency_key: str) -> Optional[Job]:
    stmt = owned(Job, user_id).where(Job.idempotency_key == idempotency_key).limit(1)
    return (await db.execute(stmt)).scalars().first()


async def create_job(
    db: AsyncSession,
    user_id: uuid.UUID,
    job_type: str,
    idempotency_key: str,
    payload: Optional[Dict[str, Any]] = None,
) -> Job:
    """Queue a pending job. A repeated ``idempotency_key`` returns the existing job."""
    existing = await _find_by_key(db, user_id, idempotency_key)
    if existing:
        return existing
    try:
        job = await insert_unique(db, Job(
            user_id=user_id,
            job_type=job_type,
            idempotency_key=idempotency_key,
            payload=dict(payload or {}),
            status=JobStatus.pending,
        ))
    except ConflictError:
        job = await _find_by_key(db, user_id, idempotency_key)
        if job is None:
            raise StorageError("job vanished after conflict")
        return job
    logger.info("job %s queued (%s) for user %s", job.id, job_type, user_id)
    return job


async def get_job(db: AsyncSession, job_id: uuid.UUID, user_id: uuid.UUID) -> Job:
    job = await fetch_owned(db, Job, job_id, user_id)
    if job is None:
        raise NotFoundError(f"job {job_id} not found")
    return job


async def list_jobs(db: AsyncSession, user_id: uuid.UUID, limit: int = 50) -> List[Job]:
    stmt = owned(Job, user_id).order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def _move(db: AsyncSession, job: Job, status: JobStatus, error_code: Optional[str] = None) -> Job:
    if job.status not in _NEXT[status]:
        raise InvalidTransition(f"job {job.id} cannot go from {job.status.value} to {status.value}")
    job.status = status
    job.error_code = error_code
    await commit(db, "job")
    logger.info("job %s -> %s", job.id, status.value)
    return job


async def mark_running(db: AsyncSession, job: Job) -> Job:
    return await _move(db, job, JobStatus.running)


async def mark_complete(db: AsyncSession, job: Job) -> Job:
    return await _move(db, job, JobStatus.complete)


async def mark_failed(db: AsyncSession, job: Job, error_code: str) -> Job:
    return await _move(db, job, JobStatus.failed, error_code=(error_code or "failed")[:64])
