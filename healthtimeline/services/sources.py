# services/sources.py
"""Data source registry and the connection state machine.

Connection and sync fields are the only mutable state on a source and
they move only through ``connect``, ``sync`` and ``retry``:

    disconnected --connect--> connected --sync--> connected | error
    error --retry--> connected | error

Internal sources (manual entry, uploads) have no connection and reject
every action.
"""
import logging
import uuid
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from healthtimeline.access import fetch_owned, owned
from healthtimeline.errors import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    StorageError,
    SyncFailed,
    TimelineError,
    ValidationError,
)
from healthtimeline.models import (
    INTERNAL_KINDS,
    ConnectionState,
    DataSource,
    DataSourceKind,
    DataSourceStatus,
    Job,
    SyncStatus,
)
from healthtimeline.services import audit, jobs
from healthtimeline.services.store import commit, insert_unique
from healthtimeline.utils import utcnow

logger = logging.getLogger(__name__)

SYNC_JOB_TYPE = "source_sync_requested"

# action -> states it may start from
ALLOWED_FROM = {
    "connect": frozenset({ConnectionState.disconnected}),
    "sync": frozenset({ConnectionState.connected}),
    "retry": frozenset({ConnectionState.error}),
}

Importer = Callable[[AsyncSession, uuid.UUID, DataSource], Awaitable[object]]


def _kind(kind) -> DataSourceKind:
    try:
        return DataSourceKind(kind)
    except ValueError:
        raise ValidationError("unknown data source kind", code="invalid_source_kind") from None


async def _find_source(db: AsyncSession, user_id: uuid.UUID, kind: DataSourceKind, name: str) -> Optional[DataSource]:
    stmt = owned(DataSource, user_id).where(DataSource.kind == kind, DataSource.display_name == name).limit(1)
    return (await db.execute(stmt)).scalars().first()


async def _get_or_create(db: AsyncSession, user_id: uuid.UUID, kind, name: str, provider: Optional[str]) -> tuple[DataSource, bool]:
    kind = _kind(kind)
    name = (name or "").strip()
    if not name:
        raise ValidationError("data source name is required", code="invalid_source_name")
    existing = await _find_source(db, user_id, kind, name)
    if existing:
        return existing, False

    if kind in INTERNAL_KINDS:
        src = DataSource(user_id=user_id, kind=kind, display_name=name, provider=provider,
                         status=DataSourceStatus.active, connection_state=ConnectionState.disconnected)
    else:
        src = DataSource(user_id=user_id, kind=kind, display_name=name, provider=provider,
                         status=DataSourceStatus.pending, connection_state=ConnectionState.disconnected,
                         last_sync_status=SyncStatus.never)
    try:
        return await insert_unique(db, src), True
    except ConflictError:
        logger.info("data source (%s) for user %s created concurrently; re-fetching", kind.value, user_id)
    existing = await _find_source(db, user_id, kind, name)
    if existing is None:
        raise StorageError("data source vanished after conflict")
    return existing, False


async def get_or_create_data_source(
    db: AsyncSession,
    user_id: uuid.UUID,
    kind,
    name: str,
    provider: Optional[str] = None,
) -> uuid.UUID:
    """Return the id of the user's ``(kind, name)`` source, creating it once."""
    src, _ = await _get_or_create(db, user_id, kind, name, provider)
    return src.id


async def register_external_source(
    db: AsyncSession,
    user_id: uuid.UUID,
    kind,
    name: str,
    provider: Optional[str] = None,
) -> DataSource:
    if _kind(kind) in INTERNAL_KINDS:
        raise ValidationError("internal sources are created by the write flows", code="invalid_source_kind")
    src, created = await _get_or_create(db, user_id, kind, name, provider)
    source_id = src.id
    if created:
        await audit.record(db, user_id, "source_added", "data_source", source_id)
        src = await get_source(db, source_id, user_id)
    return src


async def list_sources(db: AsyncSession, user_id: uuid.UUID) -> List[DataSource]:
    stmt = owned(DataSource, user_id).order_by(DataSource.created_at.asc(), DataSource.id.asc())
    return list((await db.execute(stmt)).scalars().all())


async def get_source(db: AsyncSession, source_id: uuid.UUID, user_id: uuid.UUID) -> DataSource:
    src = await fetch_owned(db, DataSource, source_id, user_id)
    if src is None:
        raise NotFoundError(f"data source {source_id} not found")
    return src


def check_transition(source: DataSource, action: str) -> None:
    if action not in ALLOWED_FROM:
        raise InvalidTransition(f"unknown action '{action}'")
    if source.kind in INTERNAL_KINDS:
        raise InvalidTransition(f"{source.kind.value} sources cannot {action}")
    if source.connection_state not in ALLOWED_FROM[action]:
        raise InvalidTransition(f"cannot {action} from {source.connection_state.value}")


# ---- state machine ----
async def _default_importer(db: AsyncSession, user_id: uuid.UUID, source: DataSource):
    from healthtimeline.services.external_import import demo_batch, import_external_batch

    return await import_external_batch(db, user_id, source, demo_batch())


async def connect(db: AsyncSession, user_id: uuid.UUID, source_id: uuid.UUID) -> DataSource:
    src = await get_source(db, source_id, user_id)
    check_transition(src, "connect")
    src.connection_state = ConnectionState.connected
    src.status = DataSourceStatus.active
    await commit(db, "data source")
    logger.info("data source %s connected", source_id)
    await audit.record(db, user_id, "external_source_connected", "data_source", source_id)
    return await get_source(db, source_id, user_id)


async def _run_import(db: AsyncSession, user_id: uuid.UUID, source_id: uuid.UUID, action: str,
                      importer: Optional[Importer]) -> DataSource:
    src = await get_source(db, source_id, user_id)
    check_transition(src, action)
    importer = importer or _default_importer
    try:
        await importer(db, user_id, src)
    except Exception as exc:  # noqa: BLE001
        code = exc.code if isinstance(exc, TimelineError) else "import_failed"
        await db.rollback()
        src = await get_source(db, source_id, user_id)
        src.connection_state = ConnectionState.error
        src.last_sync_status = SyncStatus.error
        src.last_error_code = code
        src.last_error_at = utcnow()
        await commit(db, "data source")
        logger.warning("%s of data source %s failed: %s (%s)", action, source_id, code, type(exc).__name__)
        raise SyncFailed(f"{action} failed", code=code) from exc

    src = await get_source(db, source_id, user_id)
    src.connection_state = ConnectionState.connected
    src.last_sync_at = utcnow()
    src.last_sync_status = SyncStatus.ok
    src.last_error_code = None
    src.last_error_at = None
    await commit(db, "data source")
    logger.info("%s of data source %s complete", action, source_id)
    return src


async def sync(db: AsyncSession, user_id: uuid.UUID, source_id: uuid.UUID,
               importer: Optional[Importer] = None) -> DataSource:
    return await _run_import(db, user_id, source_id, "sync", importer)


async def retry(db: AsyncSession, user_id: uuid.UUID, source_id: uuid.UUID,
                importer: Optional[Importer] = None) -> DataSource:
    return await _run_import(db, user_id, source_id, "retry", importer)


async def apply_action(db: AsyncSession, user_id: uuid.UUID, source_id: uuid.UUID, action: str,
                       importer: Optional[Importer] = None) -> DataSource:
    if action == "connect":
        return await connect(db, user_id, source_id)
    if action in ("sync", "retry"):
        return await _run_import(db, user_id, source_id, action, importer)
    raise InvalidTransition(f"unknown action '{action}'")


# ---- asynchronous requests ----
async def request_sync(
    db: AsyncSession,
    user_id: uuid.UUID,
    source_id: uuid.UUID,
    action: str,
    idempotency_key: Optional[str] = None,
) -> Job:
    """Queue ``action`` on a source and return the pending job right away.

    The transition is checked up front so an illegal request never queues.
    """
    src = await get_source(db, source_id, user_id)
    check_transition(src, action)
    requested_at = utcnow()
    key = idempotency_key or f"{source_id}:{action}:{uuid.uuid4().hex}"
    job = await jobs.create_job(db, user_id, SYNC_JOB_TYPE, key, {
        "source_id": str(source_id),
        "action": action,
        "requested_at": requested_at.isoformat(),
    })
    job_id = job.id
    await audit.record(db, user_id, SYNC_JOB_TYPE, "data_source", source_id)
    return await jobs.get_job(db, job_id, user_id)


async def run_sync_job(session_maker: async_sessionmaker, user_id: uuid.UUID, job_id: uuid.UUID,
                       importer: Optional[Importer] = None) -> None:
    """Background runner for a queued source action; records the outcome on the job."""
    async with session_maker() as db:
        job = await jobs.get_job(db, job_id, user_id)
        await jobs.mark_running(db, job)
        source_id = uuid.UUID(job.payload["source_id"])
        try:
            await apply_action(db, user_id, source_id, job.payload["action"], importer=importer)
        except TimelineError as exc:
            await db.rollback()
            job = await jobs.get_job(db, job_id, user_id)
            await jobs.mark_failed(db, job, exc.code)
            logger.warning("job %s failed: %s", job_id, exc.code)
            return
        job = await jobs.get_job(db, job_id, user_id)
        await jobs.mark_complete(db, job)
