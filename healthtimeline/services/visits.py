# services/visits.py
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.errors import ValidationError
from healthtimeline.models import DataSourceKind, EventType, ProvenanceMethod
from healthtimeline.services import audit
from healthtimeline.services.consent import get_or_create_default_consent_snapshot
from healthtimeline.services.events import NewTimelineEvent, append, owned_event_ids
from healthtimeline.services.journal import JOURNAL_SOURCE_NAME
from healthtimeline.services.provenance import create_provenance
from healthtimeline.services.sources import get_or_create_data_source
from healthtimeline.services.store import commit
from healthtimeline.utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


async def create_visit_summary(
    db: AsyncSession,
    user_id: uuid.UUID,
    title: str,
    summary: str,
    label: Optional[str],
    referenced_event_ids: Iterable[uuid.UUID],
) -> uuid.UUID:
    """Bundle existing events into one ``visit_summary`` for an appointment.

    References are read-side links only; the referenced events are untouched.
    """
    ref_ids = list(dict.fromkeys(referenced_event_ids or []))
    if not ref_ids:
        raise ValidationError("a visit summary needs at least one event", code="empty_references")
    title = (title or "").strip()
    summary = (summary or "").strip()
    if not title or not summary:
        raise ValidationError("title and summary are required", code="invalid_visit_summary")

    refs = await owned_event_ids(db, user_id, ref_ids)
    if len(refs) != len(ref_ids):
        raise ValidationError("referenced events not found for this user", code="invalid_reference")
    times = [parse_timestamp(r.event_time) for r in refs.values()]

    source_id = await get_or_create_data_source(db, user_id, DataSourceKind.manual, JOURNAL_SOURCE_NAME)
    consent_id = await get_or_create_default_consent_snapshot(db, user_id)
    try:
        prov_id = await create_provenance(db, source_id, ProvenanceMethod.manual_entry, {
            "client": "api",
            "event_count": len(ref_ids),
        })
        event_id = await append(db, NewTimelineEvent(
            user_id=user_id,
            event_type=EventType.visit_summary,
            event_time=utcnow(),
            title=title,
            summary=summary,
            details={
                "referenced_event_ids": ref_ids,
                "label": label or None,
                "date_range_start": min(times),
                "date_range_end": max(times),
            },
            provenance_id=prov_id,
            consent_snapshot_id=consent_id,
        ))
    except Exception:
        await db.rollback()
        raise
    await commit(db, "visit summary")
    logger.info("visit summary %s created over %d events", event_id, len(ref_ids))
    await audit.record(db, user_id, "visit_summary_created", "timeline_event", event_id)
    return event_id
