# services/audit.py
import logging
import uuid
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.access import owned
from healthtimeline.models import AuditEvent

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = frozenset({
    "journal_created",
    "document_uploaded",
    "document_downloaded",
    "event_amended",
    "visit_summary_created",
    "source_added",
    "external_source_connected",
    "source_sync_requested",
    "external_events_imported",
})


async def record(
    db: AsyncSession,
    user_id: uuid.UUID,
    action: str,
    entity_type: str,
    entity_id: uuid.UUID,
) -> Optional[uuid.UUID]:
    """Append one audit row in its own commit, after the audited write.

    Best effort: a failure here is logged and returns ``None``; the write it
    describes has already been committed and stays.
    """
    if action not in AUDIT_ACTIONS:
        logger.warning("unknown audit action %s", action)
    row = AuditEvent(user_id=user_id, action=action, entity_type=entity_type, entity_id=entity_id)
    db.add(row)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("audit %s for %s %s not recorded: %s", action, entity_type, entity_id, type(exc).__name__)
        return None
    return row.id


async def list_recent(db: AsyncSession, user_id: uuid.UUID, limit: int = 50) -> List[AuditEvent]:
    limit = max(1, min(int(limit or 50), 500))
    stmt = owned(AuditEvent, user_id).order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())
