# services/events.py
"""The per-user event log.

Events are only ever inserted. ``append`` validates references and the
detail payload, then flushes; committing is left to the write flow that
owns the transaction.
"""
import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.access import fetch_owned, owned
from healthtimeline.errors import InvalidAmendmentTarget, NotFoundError, ValidationError
from healthtimeline.models import AMENDABLE_EVENT_TYPES, ConsentSnapshot, EventType, Provenance, TimelineEvent
from healthtimeline.schemas import AmendmentDetails, VisitSummaryDetails, decode_details, encode_details
from healthtimeline.services.store import flush
from healthtimeline.settings.config import settings
from healthtimeline.utils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class NewTimelineEvent:
    user_id: uuid.UUID
    event_type: Union[EventType, str]
    event_time: Union[datetime, str]
    summary: str
    provenance_id: uuid.UUID
    consent_snapshot_id: uuid.UUID
    details: Any = field(default_factory=dict)
    title: Optional[str] = None


FILTER_EVENT_TYPES = {
    "all": None,
    "journal": EventType.journal_entry,
    "documents": EventType.document_uploaded,
    "external": EventType.external_event,
    "amendments": EventType.event_amended,
    "visits": EventType.visit_summary,
}


@dataclass
class TimelineFilter:
    kind: str = "all"
    category: Optional[str] = None

    def __post_init__(self):
        if self.kind not in FILTER_EVENT_TYPES:
            raise ValidationError(f"unknown timeline filter '{self.kind}'", code="invalid_filter")

    def apply(self, stmt):
        etype = FILTER_EVENT_TYPES[self.kind]
        if etype is not None:
            stmt = stmt.where(TimelineEvent.event_type == etype.value)
        if self.category:
            stmt = stmt.where(TimelineEvent.details["category"].as_string() == self.category)
        return stmt


@dataclass
class TimelinePage:
    events: List[TimelineEvent]
    next_cursor: Optional[str] = None


# ---- cursor helpers ----
def encode_cursor(event: TimelineEvent) -> str:
    raw = f"{event.event_time.isoformat()}|{event.id}"
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str):
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        ts, eid = base64.urlsafe_b64decode(padded.encode()).decode().split("|", 1)
        return parse_timestamp(ts, field="cursor"), uuid.UUID(eid)
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError):
        raise ValidationError("malformed cursor", code="invalid_cursor") from None


# ---- writes ----
async def _validate(db: AsyncSession, event: NewTimelineEvent) -> TimelineEvent:
    if event.user_id is None:
        raise ValidationError("user_id is required", code="missing_user")
    try:
        etype = EventType(event.event_type)
    except ValueError:
        raise ValidationError("unknown event type", code="invalid_event_type") from None

    event_time = parse_timestamp(event.event_time)
    summary = (event.summary or "").strip()
    if not summary:
        raise ValidationError("summary must not be empty", code="empty_summary")

    try:
        details = decode_details(etype, event.details)
    except PydanticValidationError:
        raise ValidationError(f"details do not match {etype.value}", code="invalid_details") from None

    if await fetch_owned(db, Provenance, event.provenance_id, event.user_id) is None:
        raise ValidationError("provenance not found for this user", code="invalid_provenance")
    if await fetch_owned(db, ConsentSnapshot, event.consent_snapshot_id, event.user_id) is None:
        raise ValidationError("consent snapshot not found for this user", code="invalid_consent")

    if isinstance(details, AmendmentDetails):
        target = await fetch_owned(db, TimelineEvent, details.amends_event_id, event.user_id)
        if target is None:
            raise ValidationError("amended event not found for this user", code="invalid_reference")
        if target.event_type not in {t.value for t in AMENDABLE_EVENT_TYPES}:
            raise InvalidAmendmentTarget(f"{target.event_type} events cannot be amended")
        if details.amended_event_type != target.event_type:
            raise ValidationError("amended_event_type does not match the amended event", code="invalid_reference")
    elif isinstance(details, VisitSummaryDetails):
        found = await owned_event_ids(db, event.user_id, details.referenced_event_ids)
        if len(found) != len(set(details.referenced_event_ids)):
            raise ValidationError("referenced events not found for this user", code="invalid_reference")

    return TimelineEvent(
        user_id=event.user_id,
        event_type=etype.value,
        event_time=event_time,
        title=event.title,
        summary=summary,
        details=encode_details(details),
        provenance_id=event.provenance_id,
        consent_snapshot_id=event.consent_snapshot_id,
    )


async def append(db: AsyncSession, event: NewTimelineEvent) -> uuid.UUID:
    row = await _validate(db, event)
    db.add(row)
    await flush(db, "timeline event")
    logger.debug("event %s appended (%s)", row.id, row.event_type)
    return row.id


async def append_many(db: AsyncSession, events: Iterable[NewTimelineEvent]) -> List[uuid.UUID]:
    rows = [await _validate(db, ev) for ev in events]
    db.add_all(rows)
    await flush(db, "timeline events")
    logger.debug("%d events appended", len(rows))
    return [r.id for r in rows]


# ---- reads ----
async def owned_event_ids(db: AsyncSession, user_id: uuid.UUID, event_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, TimelineEvent]:
    ids = list(set(event_ids))
    if not ids:
        return {}
    rows = (await db.execute(owned(TimelineEvent, user_id).where(TimelineEvent.id.in_(ids)))).scalars().all()
    return {r.id: r for r in rows}


async def get_by_id(db: AsyncSession, event_id: uuid.UUID, user_id: uuid.UUID) -> TimelineEvent:
    row = await fetch_owned(db, TimelineEvent, event_id, user_id)
    if row is None:
        raise NotFoundError(f"event {event_id} not found")
    return row


async def list_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    filter: Optional[TimelineFilter] = None,
    order: str = "desc",
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> TimelinePage:
    """One page of the user's timeline ordered by ``(event_time, id)``."""
    if order not in ("asc", "desc"):
        raise ValidationError("order must be 'asc' or 'desc'", code="invalid_order")
    limit = max(1, min(int(limit or settings.TIMELINE_PAGE_SIZE), 500))

    stmt = (filter or TimelineFilter()).apply(owned(TimelineEvent, user_id))
    if cursor:
        ts, eid = decode_cursor(cursor)
        if order == "desc":
            stmt = stmt.where(or_(
                TimelineEvent.event_time < ts,
                and_(TimelineEvent.event_time == ts, TimelineEvent.id < eid),
            ))
        else:
            stmt = stmt.where(or_(
                TimelineEvent.event_time > ts,
                and_(TimelineEvent.event_time == ts, TimelineEvent.id > eid),
            ))
    if order == "desc":
        stmt = stmt.order_by(TimelineEvent.event_time.desc(), TimelineEvent.id.desc())
    else:
        stmt = stmt.order_by(TimelineEvent.event_time.asc(), TimelineEvent.id.asc())

    rows = list((await db.execute(stmt.limit(limit + 1))).scalars().all())
    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_cursor = encode_cursor(rows[-1])
    return TimelinePage(events=rows, next_cursor=next_cursor)


async def iter_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    filter: Optional[TimelineFilter] = None,
    order: str = "desc",
    page_size: Optional[int] = None,
) -> AsyncIterator[TimelineEvent]:
    """Walk the whole timeline page by page. Each call starts from the top."""
    cursor = None
    while True:
        page = await list_for_user(db, user_id, filter=filter, order=order, limit=page_size, cursor=cursor)
        for ev in page.events:
            yield ev
        if not page.next_cursor:
            return
        cursor = page.next_cursor
