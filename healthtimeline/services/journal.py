# services/journal.py
import logging
import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.errors import ValidationError
from healthtimeline.models import DataSourceKind, EventType, ProvenanceMethod
from healthtimeline.services import audit
from healthtimeline.services.consent import get_or_create_default_consent_snapshot
from healthtimeline.services.events import NewTimelineEvent, append
from healthtimeline.services.provenance import create_provenance
from healthtimeline.services.sources import get_or_create_data_source
from healthtimeline.services.store import commit
from healthtimeline.utils import parse_timestamp, summarize

logger = logging.getLogger(__name__)

JOURNAL_SOURCE_NAME = "User Journal"
DEFAULT_TITLE = "Journal entry"


async def create_journal_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    text: str,
    category: Optional[str] = None,
    title: Optional[str] = None,
    event_time: Union[datetime, str, None] = None,
) -> uuid.UUID:
    text = (text or "").strip()
    if not text or len(text) > 5000:
        raise ValidationError("journal text must be 1-5000 characters", code="invalid_text")
    title = (title or "").strip() or DEFAULT_TITLE
    if len(title) > 100:
        raise ValidationError("journal title must be at most 100 characters", code="invalid_title")
    event_time = parse_timestamp(event_time)

    source_id = await get_or_create_data_source(db, user_id, DataSourceKind.manual, JOURNAL_SOURCE_NAME)
    consent_id = await get_or_create_default_consent_snapshot(db, user_id)
    try:
        prov_id = await create_provenance(db, source_id, ProvenanceMethod.manual_entry, {"client": "api"})
        event_id = await append(db, NewTimelineEvent(
            user_id=user_id,
            event_type=EventType.journal_entry,
            event_time=event_time,
            title=title,
            summary=summarize(text),
            details={"text": text, "category": category or "other"},
            provenance_id=prov_id,
            consent_snapshot_id=consent_id,
        ))
    except Exception:
        await db.rollback()
        raise
    await commit(db, "journal entry")
    logger.info("journal entry %s created for user %s", event_id, user_id)
    await audit.record(db, user_id, "journal_created", "timeline_event", event_id)
    return event_id
