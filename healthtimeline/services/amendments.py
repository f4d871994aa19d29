# services/amendments.py
"""Corrections as events.

An amendment never touches its target. The current view of an event is
the original with the newest amendment's fields laid over it; fields the
newest amendment leaves out come from the original, not from older
amendments.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.access import owned
from healthtimeline.errors import InvalidAmendmentTarget, TooManyAmendments, ValidationError
from healthtimeline.models import AMENDABLE_EVENT_TYPES, DataSourceKind, EventType, ProvenanceMethod, TimelineEvent
from healthtimeline.schemas import OVERRIDABLE_FIELDS
from healthtimeline.services import audit
from healthtimeline.services.consent import get_or_create_default_consent_snapshot
from healthtimeline.services.documents import doc_type_label
from healthtimeline.services.events import NewTimelineEvent, append, get_by_id
from healthtimeline.services.provenance import create_provenance
from healthtimeline.services.sources import get_or_create_data_source
from healthtimeline.services.store import commit
from healthtimeline.settings.config import settings
from healthtimeline.utils import summarize, utcnow

logger = logging.getLogger(__name__)

# which overridable fields make sense for each amendable type
FIELDS_BY_TARGET = {
    EventType.journal_entry: ("text", "category", "title"),
    EventType.document_uploaded: ("title", "doc_type", "notes"),
}

SOURCE_NAME_BY_TARGET = {
    EventType.journal_entry: "User Journal Amendment",
    EventType.document_uploaded: "Document Amendment",
}

AMENDMENT_TYPE_BY_TARGET = {
    EventType.journal_entry: "journal",
    EventType.document_uploaded: "document",
}


@dataclass
class CurrentView:
    event: Any
    title: Optional[str]
    summary: str
    details: Dict[str, Any] = field(default_factory=dict)
    latest_amendment_id: Optional[uuid.UUID] = None
    amendment_count: int = 0


def _original_fields(original) -> Dict[str, Any]:
    values = dict(original.details or {})
    values["title"] = original.title
    return values


def fold(original, amendments: Sequence) -> CurrentView:
    """Lay the newest of ``amendments`` (ordered newest first) over ``original``."""
    if not amendments:
        return CurrentView(
            event=original,
            title=original.title,
            summary=original.summary,
            details=dict(original.details or {}),
        )
    latest = amendments[0]
    overrides = {k: v for k, v in (latest.details or {}).items() if k in OVERRIDABLE_FIELDS and v is not None}
    merged = _original_fields(original)
    merged.update(overrides)

    title = merged.pop("title", None)
    summary = summarize(overrides["text"]) if "text" in overrides else original.summary
    return CurrentView(
        event=original,
        title=title,
        summary=summary,
        details={k: v for k, v in merged.items() if v is not None},
        latest_amendment_id=latest.id,
        amendment_count=len(amendments),
    )


async def find_amendments(
    db: AsyncSession,
    event_id: uuid.UUID,
    user_id: uuid.UUID,
    limit: Optional[int] = None,
) -> List[TimelineEvent]:
    """The user's amendments of ``event_id``, newest first."""
    limit = limit or settings.AMENDMENT_SCAN_LIMIT
    stmt = (
        owned(TimelineEvent, user_id)
        .where(TimelineEvent.event_type == EventType.event_amended.value)
        .where(TimelineEvent.details["amends_event_id"].as_string() == str(event_id))
        .order_by(TimelineEvent.created_at.desc(), TimelineEvent.id.desc())
        .limit(limit + 1)
    )
    rows = list((await db.execute(stmt)).scalars().all())
    if len(rows) > limit:
        raise TooManyAmendments(f"event {event_id} has more than {limit} amendments")
    return rows


async def current_view(db: AsyncSession, event_id: uuid.UUID, user_id: uuid.UUID) -> CurrentView:
    original = await get_by_id(db, event_id, user_id)
    if original.event_type not in {t.value for t in AMENDABLE_EVENT_TYPES}:
        return fold(original, [])
    return fold(original, await find_amendments(db, event_id, user_id))


async def create_amendment(
    db: AsyncSession,
    user_id: uuid.UUID,
    target_event_id: uuid.UUID,
    changes: Dict[str, Any],
    note: Optional[str] = None,
) -> uuid.UUID:
    """Append an ``event_amended`` event correcting a journal entry or document."""
    target = await get_by_id(db, target_event_id, user_id)
    try:
        target_type = EventType(target.event_type)
    except ValueError:
        target_type = None
    if target_type not in AMENDABLE_EVENT_TYPES:
        raise InvalidAmendmentTarget(f"{target.event_type} events cannot be amended")

    allowed = FIELDS_BY_TARGET[target_type]
    changes = {k: v for k, v in (changes or {}).items() if v is not None}
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValidationError(
            f"cannot amend {', '.join(sorted(unknown))} on {target_type.value}", code="invalid_amendment_fields"
        )
    if not changes:
        raise ValidationError("an amendment must change at least one field", code="empty_amendment")

    # capture before any commit below can expire the instance
    target_id = target.id
    target_title = target.title
    target_time = target.event_time
    target_details = dict(target.details or {})

    source_id = await get_or_create_data_source(db, user_id, DataSourceKind.manual, SOURCE_NAME_BY_TARGET[target_type])
    consent_id = await get_or_create_default_consent_snapshot(db, user_id)

    details: Dict[str, Any] = {
        "amends_event_id": target_id,
        "amended_event_type": target_type.value,
        "original_event_time": target_time,
        "note": note,
        **changes,
    }
    if target_type is EventType.journal_entry:
        title = f"Amended: {changes.get('title') or target_title or 'Journal entry'}"
        summary = summarize(changes["text"]) if changes.get("text") else "Updated journal entry"
    else:
        label = doc_type_label(changes.get("doc_type") or target_details.get("doc_type"))
        title = f"Amended: {changes.get('title') or target_title or 'Document'}"
        summary = f"Updated {label or 'document'} details"
        details["document_artifact_id"] = target_details.get("document_artifact_id")

    try:
        prov_id = await create_provenance(db, source_id, ProvenanceMethod.manual_amendment, {
            "client": "api",
            "amendment_type": AMENDMENT_TYPE_BY_TARGET[target_type],
        })
        event_id = await append(db, NewTimelineEvent(
            user_id=user_id,
            event_type=EventType.event_amended,
            event_time=utcnow(),
            title=title,
            summary=summary,
            details=details,
            provenance_id=prov_id,
            consent_snapshot_id=consent_id,
        ))
    except Exception:
        await db.rollback()
        raise
    await commit(db, "amendment")
    logger.info("event %s amended by %s", target_id, event_id)
    await audit.record(db, user_id, "event_amended", "timeline_event", event_id)
    return event_id
